from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import pytest

from orderflow.context import CheckoutContext, SessionUser
from orderflow.controller import OrderProgressController
from orderflow.exceptions import WebhookSignatureError
from orderflow.models import Order, OrderItem, Subscription
from orderflow.policy import default_price_policy
from orderflow.providers import (
    ChargeHandle,
    EventKind,
    PaymentProvider,
    ProviderEvent,
    ProviderRegistry,
    ProviderResult,
    ReturnUrls,
)
from orderflow.stores import (
    Cart,
    InMemoryCartStore,
    InMemoryOrderStore,
    InMemorySubscriptionStore,
    InMemoryUserDirectory,
)
from orderflow.subscriptions import SubscriptionLifecycleManager
from orderflow.tokens import OrderTokenSigner

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
JWT_SECRET = "test-secret-that-is-long-enough-for-hs256"

VALID_ADDRESS = {
    "email": "jane@example.com",
    "phone": "+421900000000",
    "name_first": "Jane",
    "name_last": "Doe",
    "street": "Main 1",
    "zip": "81101",
    "city": "Bratislava",
    "country": "SK",
}


def item_doc(
    item_id: str = "item-1",
    price: str = "10.00",
    amount: int = 2,
    subtype: str = "physical",
    **extra: Any,
) -> Dict[str, Any]:
    doc = {
        "id": item_id,
        "name": f"Product {item_id}",
        "amount": amount,
        "price": price,
        "tax": "0.2",
        "type": "product",
        "subtype": subtype,
    }
    doc.update(extra)
    return doc


def subscription_item_doc(cycles: int = 3, **extra: Any) -> Dict[str, Any]:
    return item_doc(
        item_id="sub-item",
        price="9.99",
        amount=1,
        subtype="digital",
        type="subscription",
        subscription={"period": "month", "duration": 1, "cycles": cycles},
        **extra,
    )


def make_order(items: Optional[List[Dict[str, Any]]] = None, **fields: Any) -> Order:
    order = Order(items=[OrderItem.from_dict(doc) for doc in (items if items is not None else [item_doc()])])
    for name, value in fields.items():
        setattr(order, name, value)
    return order


def checkout_input(**overrides: Any) -> Dict[str, Any]:
    payload = {
        "addresses": {"invoice_address": dict(VALID_ADDRESS)},
        "data": {
            "delivery_data": {"codename": {"physical": "courier"}},
            "payment_data": {"codename": "cod"},
        },
        "dates": {"user_confirmation": "2024-03-01T11:59:59+00:00"},
    }
    payload.update(overrides)
    return payload


class FakeProvider(PaymentProvider):
    """Scripted provider; webhook deliveries are authentic when signed "good"."""

    def __init__(self, name: str = "fake", succeed: bool = True):
        self.name = name
        self.succeed = succeed
        self.calls: List[tuple] = []
        self.next_event: Optional[ProviderEvent] = None
        self.charges = 0

    @property
    def supplier(self) -> str:
        return self.name

    async def create_charge(self, order: Order, urls: ReturnUrls) -> ChargeHandle:
        self.charges += 1
        self.calls.append(("create_charge", order.id, urls.success_url))
        return ChargeHandle(url=f"https://pay.test/{order.id}", correlation_id=f"chg_{self.charges}")

    async def create_plan(self, subscription: Subscription, urls: ReturnUrls) -> ChargeHandle:
        self.calls.append(("create_plan", subscription.id))
        return ChargeHandle(url="https://pay.test/plan", correlation_id=f"plan_{subscription.id}")

    async def execute(self, params: Dict[str, Any]) -> ProviderEvent:
        self.calls.append(("execute", dict(params)))
        return self.next_event or ProviderEvent(kind=EventKind.IGNORED, supplier=self.name)

    async def suspend(self, agreement_id: str, reason: str) -> ProviderResult:
        self.calls.append(("suspend", agreement_id, reason))
        return ProviderResult(success=self.succeed, message=None if self.succeed else "refused")

    async def reactivate(self, agreement_id: str, reason: str) -> ProviderResult:
        self.calls.append(("reactivate", agreement_id, reason))
        return ProviderResult(success=self.succeed, message=None if self.succeed else "refused")

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> None:
        if headers.get("x-test-signature") != "good":
            raise WebhookSignatureError(self.name)

    def parse_event(self, payload: bytes) -> ProviderEvent:
        if self.next_event is None:
            raise ValueError("no scripted event")
        return self.next_event


@pytest.fixture
def policy():
    return default_price_policy()


@pytest.fixture
def signer():
    return OrderTokenSigner(JWT_SECRET, ttl_hours=24)


@pytest.fixture
def order_store():
    return InMemoryOrderStore()


@pytest.fixture
def subscription_store():
    return InMemorySubscriptionStore()


@pytest.fixture
def cart_store():
    return InMemoryCartStore()


@pytest.fixture
def users():
    return InMemoryUserDirectory()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def providers(fake_provider):
    registry = ProviderRegistry()
    registry.register(fake_provider)
    return registry


@pytest.fixture
def manager(subscription_store, order_store, providers, policy):
    return SubscriptionLifecycleManager(
        store=subscription_store,
        order_store=order_store,
        providers=providers,
        policy=policy,
        tolerance_days=1,
    )


@pytest.fixture
def controller(order_store, cart_store, users, manager, providers, policy, signer):
    return OrderProgressController(
        order_store=order_store,
        cart_store=cart_store,
        users=users,
        subscriptions=manager,
        providers=providers,
        policy=policy,
        token_signer=signer,
        public_base_url="https://shop.test",
    )


@pytest.fixture
def customer():
    return SessionUser(
        id="usr_customer",
        email="jane@example.com",
        username="jane",
        addresses=[dict(VALID_ADDRESS, type="invoice")],
    )


@pytest.fixture
def admin():
    return SessionUser(id="usr_admin", email="admin@example.com", is_admin=True)


async def fill_cart(cart_store: InMemoryCartStore, cart_id: str, *items: Dict[str, Any]) -> Cart:
    cart = await cart_store.get_or_create(cart_id)
    cart.items = list(items)
    await cart_store.save(cart)
    return cart


def anonymous_context(cart_id: str = "cart-1", token: Optional[str] = None) -> CheckoutContext:
    return CheckoutContext(cart_id=cart_id, unverified_token=token, ip="127.0.0.1", lang="en")
