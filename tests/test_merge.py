from orderflow.merge import merge_sent_params


def test_unknown_top_level_keys_are_dropped():
    target = {"notes": None, "addresses": {"invoice_address": None}}

    merged = merge_sent_params(target, {"notes": "ring twice", "hacked": True})

    assert merged == {"notes": "ring twice", "addresses": {"invoice_address": None}}


def test_protected_keys_are_ignored():
    target = {"id": "ord_1", "user": {"id": "usr_1"}}

    merged = merge_sent_params(target, {"id": "ord_2", "user": {"id": "usr_2"}})

    assert merged == {"id": "ord_1", "user": {"id": "usr_1"}}


def test_nested_mappings_are_created_and_merged():
    target = {"addresses": {"invoice_address": None, "delivery_address": {"city": "Kosice"}}}

    merged = merge_sent_params(
        target,
        {"addresses": {"invoice_address": {"city": "Bratislava"}, "delivery_address": {"zip": "04001"}}},
    )

    assert merged["addresses"]["invoice_address"] == {"city": "Bratislava"}
    assert merged["addresses"]["delivery_address"] == {"city": "Kosice", "zip": "04001"}


def test_deep_keys_may_be_created():
    target = {"data": {"delivery_data": {"codename": {}}}}

    merged = merge_sent_params(target, {"data": {"delivery_data": {"codename": {"physical": "courier"}}}})

    assert merged["data"]["delivery_data"]["codename"] == {"physical": "courier"}


def test_second_level_unknown_key_is_dropped():
    target = {"data": {"payment_data": {}}}

    merged = merge_sent_params(target, {"data": {"surprise": 1, "payment_data": {"codename": "cod"}}})

    assert merged == {"data": {"payment_data": {"codename": "cod"}}}


def test_explicit_none_clears_value():
    target = {"notes": "old"}

    assert merge_sent_params(target, {"notes": None}) == {"notes": None}
