import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from orderflow.controller import OrderProgressController
from orderflow.exceptions import IntakeError
from orderflow.intake import IntakeResponse, IntakeStatus, OrderIntakeClient
from orderflow.models import OrderStatus

from conftest import NOW, anonymous_context, checkout_input, fill_cart, item_doc, make_order

INTAKE_URL = "https://intake.test/api/orders"


def _client(handler):
    return OrderIntakeClient(
        INTAKE_URL,
        login="shop",
        password="secret",
        shop_id="shop-1",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestOrderIntakeClient:
    @pytest.mark.asyncio
    async def test_accepted(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"status": "accepted", "order": {"external_id": "EXT-1"}})

        order = make_order(id="ord_1")
        response = await _client(handler).submit(order)

        assert response.status == IntakeStatus.ACCEPTED
        assert response.order == {"external_id": "EXT-1"}
        assert seen["body"]["shopId"] == "shop-1"
        assert seen["body"]["order"]["id"] == "ord_1"
        assert seen["body"]["order"]["items"][0]["price"] == "10.00"
        assert seen["auth"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_unknown_status(self):
        client = _client(lambda request: httpx.Response(200, json={"status": "maybe"}))

        with pytest.raises(IntakeError, match="unknown status"):
            await client.submit(make_order())

    @pytest.mark.asyncio
    async def test_server_error(self):
        client = _client(lambda request: httpx.Response(503, text="down"))

        with pytest.raises(IntakeError) as exc_info:
            await client.submit(make_order())
        assert exc_info.value.http_status == 502

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(IntakeError):
            await client.submit(make_order())


@pytest.fixture
def intake():
    return AsyncMock(spec=OrderIntakeClient)


@pytest.fixture
def intake_controller(order_store, cart_store, users, manager, providers, policy, signer, intake):
    return OrderProgressController(
        order_store=order_store,
        cart_store=cart_store,
        users=users,
        subscriptions=manager,
        providers=providers,
        policy=policy,
        token_signer=signer,
        intake=intake,
    )


class TestControllerIntake:
    @pytest.mark.asyncio
    async def test_accepted_order_is_sent(self, intake_controller, intake, cart_store, order_store):
        intake.submit.return_value = IntakeResponse(
            status=IntakeStatus.ACCEPTED,
            order={"external_id": "EXT-9", "external_code": "2024-0001", "status": "paid"},
        )
        await fill_cart(cart_store, "cart-1", item_doc())

        outcome = await intake_controller.progress(anonymous_context(), checkout_input(), NOW)

        intake.submit.assert_awaited_once()
        stored = await order_store.get(outcome.order.id)
        assert stored.status == OrderStatus.SENT
        assert stored.external_id == "EXT-9"
        assert stored.external_code == "2024-0001"
        assert stored.dates.date_sent == NOW
        assert stored.dates.email_sent == NOW
        assert (await cart_store.get_or_create("cart-1")).items == []

    @pytest.mark.asyncio
    async def test_unreachable_intake_keeps_order_saved(self, intake_controller, intake, cart_store, order_store):
        intake.submit.side_effect = IntakeError("connection refused")
        await fill_cart(cart_store, "cart-1", item_doc())

        outcome = await intake_controller.progress(anonymous_context(), checkout_input(), NOW)

        assert outcome.result.success is True
        assert outcome.to_dict()["errors"]["order_errors"] == [{"value": "Server", "desc": "bad response"}]
        assert (await order_store.get(outcome.order.id)).status == OrderStatus.SAVED
        assert (await cart_store.get_or_create("cart-1")).items != []

    @pytest.mark.asyncio
    async def test_changed_order_is_surfaced(self, intake_controller, intake, cart_store, order_store):
        intake.submit.return_value = IntakeResponse(
            status=IntakeStatus.CHANGED,
            order={"items": [{"id": "item-1", "amount": 1}]},
        )
        await fill_cart(cart_store, "cart-1", item_doc())

        outcome = await intake_controller.progress(anonymous_context(), checkout_input(), NOW)

        body = outcome.to_dict()
        assert body["intake"]["status"] == "changed"
        assert body["intake"]["order"]["items"][0]["amount"] == 1
        stored = await order_store.get(outcome.order.id)
        assert stored.status == OrderStatus.SAVED
        assert stored.items[0].amount == 2

    @pytest.mark.asyncio
    async def test_accepted_amount_update_reprices_order(self, intake_controller, intake, cart_store, order_store):
        intake.submit.return_value = IntakeResponse(
            status=IntakeStatus.ACCEPTED,
            order={"external_id": "EXT-10", "items": [{"id": "item-1", "amount": 1}]},
        )
        await fill_cart(cart_store, "cart-1", item_doc(response_action="updated"))

        outcome = await intake_controller.progress(anonymous_context(), checkout_input(), NOW)

        stored = await order_store.get(outcome.order.id)
        assert stored.items[0].amount == 1
        assert stored.prices.price_items == Decimal("10.00")
        assert stored.prices.price_total == Decimal("25.00")
        assert stored.prices.price_total_to_pay == Decimal("25.00")
        assert outcome.order.prices.price_total == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_rejected_item_drops_out_of_totals(self, intake_controller, intake, cart_store, order_store):
        intake.submit.return_value = IntakeResponse(
            status=IntakeStatus.ACCEPTED,
            order={"items": [{"id": "item-1", "amount": 2}, {"id": "item-2", "amount": 1}]},
        )
        await fill_cart(
            cart_store,
            "cart-1",
            item_doc(),
            item_doc("item-2", price="4.00", amount=1, response_action="rejected"),
        )

        outcome = await intake_controller.progress(anonymous_context(), checkout_input(), NOW)

        stored = await order_store.get(outcome.order.id)
        assert stored.items[1].amount == 0
        assert stored.prices.price_items == Decimal("20.00")
        assert stored.prices.price_total == Decimal("35.00")
