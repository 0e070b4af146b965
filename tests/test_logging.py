import json
import logging

from orderflow.logging_config import (
    CorrelationIDFilter,
    LogContext,
    StructuredFormatter,
    generate_correlation_id,
    get_correlation_id,
    mask_sensitive_data,
    set_correlation_id,
)


def _record(message="hello"):
    return logging.LogRecord("orderflow.test", logging.INFO, __file__, 1, message, None, None)


class TestMasking:
    def test_sensitive_keys(self):
        masked = mask_sensitive_data({
            "api_key": "sk_live_abc",
            "nested": {"Stripe-Signature": "t=1,v1=abc", "amount": 3500},
            "rows": [{"password": "pw"}],
        })

        assert masked == {
            "api_key": "***",
            "nested": {"Stripe-Signature": "***", "amount": 3500},
            "rows": [{"password": "***"}],
        }

    def test_inline_secrets(self):
        text = "key sk_test_abc123 sent by jane@example.com with Bearer abc.def"

        masked = mask_sensitive_data(text)

        assert "sk_test_***" in masked
        assert "j***@example.com" in masked
        assert "Bearer ***" in masked
        assert "abc123" not in masked

    def test_card_numbers_keep_last_four(self):
        assert mask_sensitive_data("card 4242 4242 4242 4242") == "card ************4242"

    def test_input_is_not_mutated(self):
        payload = {"client_secret": "s"}

        mask_sensitive_data(payload)

        assert payload == {"client_secret": "s"}


class TestContext:
    def test_correlation_id(self):
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
        try:
            assert get_correlation_id() == correlation_id
        finally:
            set_correlation_id(None)

    def test_log_context_is_restored(self):
        record = _record()
        with LogContext(order_id="ord_1", subscription_id="sub_1"):
            CorrelationIDFilter().filter(record)
        after = _record()
        CorrelationIDFilter().filter(after)

        assert record.order_id == "ord_1"
        assert record.subscription_id == "sub_1"
        assert after.order_id is None

    def test_structured_formatter(self):
        record = _record("order saved")
        record.details = {"api_key": "sk_live_x"}
        with LogContext(order_id="ord_1"):
            CorrelationIDFilter().filter(record)

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "order saved"
        assert data["order_id"] == "ord_1"
        assert data["details"] == {"api_key": "***"}
