from datetime import timedelta
from decimal import Decimal

import pytest

from orderflow.exceptions import ProviderNotConfiguredError, WebhookSignatureError
from orderflow.models import OrderStatus, PaymentRecord, Subscription, SubscriptionDates, SubscriptionStatus
from orderflow.pricing import calculate_prices
from orderflow.providers import EventKind, ProviderEvent
from orderflow.stores import Notifier
from orderflow.webhooks import PaymentEventProcessor, WebhookRouter

from conftest import NOW, make_order

GOOD = {"x-test-signature": "good"}


async def _subscription(store, status=SubscriptionStatus.ACTIVE, agreement=True):
    subscription = Subscription(
        user_id="usr_customer",
        status=status,
        price=Decimal("9.99"),
        dates=SubscriptionDates(
            date_start=NOW - timedelta(days=60),
            date_order_next=NOW + timedelta(days=10),
            date_end=NOW + timedelta(days=365),
        ),
    )
    if agreement:
        subscription.data.agreement = {"id": "agr_1", "supplier": "fake"}
    await store.insert(subscription)
    return subscription


class RecordingNotifier(Notifier):
    def __init__(self):
        self.accepted = []
        self.paid = []

    async def order_accepted(self, order):
        self.accepted.append(order.id)

    async def order_paid(self, order):
        self.paid.append(order.id)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def processor(order_store, manager, notifier):
    return PaymentEventProcessor(order_store, manager, notifier)


@pytest.fixture
def router(providers, processor):
    return WebhookRouter(providers, processor)


async def _awaiting_payment(order_store, policy):
    order = make_order(status=OrderStatus.SAVED)
    order.data.delivery_data.codename = {"physical": "courier"}
    order.data.payment_data.codename = "cod"
    order = calculate_prices(order, policy)
    order.data.payment_data.request_ids = ["chg_1"]
    await order_store.insert(order)
    return order


def _order_paid_event(amount="35.00", event_id="pay_1", correlation_id="chg_1", **metadata):
    return ProviderEvent(
        kind=EventKind.ORDER_PAYMENT_COMPLETED,
        supplier="fake",
        event_type="payment.completed",
        correlation_id=correlation_id,
        metadata=metadata,
        record=PaymentRecord(
            event_id=event_id,
            supplier="fake",
            status="paid",
            succeeded=True,
            amount=Decimal(amount),
            received_at=NOW,
        ),
    )


class TestOrderPayments:
    @pytest.mark.asyncio
    async def test_replayed_webhook_is_applied_once(self, router, fake_provider, order_store, policy, notifier):
        order = await _awaiting_payment(order_store, policy)
        fake_provider.next_event = _order_paid_event()

        first = await router.handle_provider_event("fake", b"{}", GOOD)
        second = await router.handle_provider_event("fake", b"{}", GOOD)

        assert first == second == {"received": True}
        stored = await order_store.get(order.id)
        assert stored.status == OrderStatus.PAID
        assert len(stored.data.payment_data.history) == 1
        assert stored.data.payment_data.paid_amount_total == Decimal("35.00")
        assert stored.prices.price_total_to_pay == Decimal("0.00")
        assert notifier.paid == [order.id]

    @pytest.mark.asyncio
    async def test_partial_payments_accumulate(self, processor, order_store, policy):
        order = await _awaiting_payment(order_store, policy)

        await processor.apply(_order_paid_event(amount="20.00", event_id="pay_1"), NOW)
        partial = await order_store.get(order.id)
        assert partial.status == OrderStatus.SAVED
        assert partial.prices.price_total_to_pay == Decimal("15.00")

        await processor.apply(_order_paid_event(amount="15.00", event_id="pay_2"), NOW)
        assert (await order_store.get(order.id)).status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_falls_back_to_order_id_metadata(self, processor, order_store, policy):
        order = await _awaiting_payment(order_store, policy)

        changed = await processor.apply(_order_paid_event(correlation_id="unknown", order_id=order.id), NOW)

        assert changed is True
        assert (await order_store.get(order.id)).status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_unknown_order_is_ignored(self, processor):
        assert await processor.apply(_order_paid_event(correlation_id="nope"), NOW) is False

    @pytest.mark.asyncio
    async def test_canceled_order_only_logs_payment(self, processor, order_store, policy):
        order = await _awaiting_payment(order_store, policy)
        order.status = OrderStatus.CANCELED
        await order_store.update(order)

        await processor.apply(_order_paid_event(), NOW)

        stored = await order_store.get(order.id)
        assert stored.status == OrderStatus.CANCELED
        assert len(stored.data.payment_data.history) == 1


class TestDelivery:
    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self, router, fake_provider, order_store, policy):
        order = await _awaiting_payment(order_store, policy)
        fake_provider.next_event = _order_paid_event()

        with pytest.raises(WebhookSignatureError):
            await router.handle_provider_event("fake", b"{}", {"x-test-signature": "forged"})

        assert (await order_store.get(order.id)).status == OrderStatus.SAVED

    @pytest.mark.asyncio
    async def test_unknown_supplier(self, router):
        with pytest.raises(ProviderNotConfiguredError):
            await router.handle_provider_event("bitpay", b"{}", GOOD)

    @pytest.mark.asyncio
    async def test_processing_errors_are_still_acknowledged(self, router, fake_provider):
        # no scripted event: parse_event raises
        fake_provider.next_event = None

        result = await router.handle_provider_event("fake", b"not json", GOOD)

        assert result == {"received": True}

    @pytest.mark.asyncio
    async def test_ignored_event(self, router, fake_provider):
        fake_provider.next_event = ProviderEvent(kind=EventKind.IGNORED, supplier="fake", event_type="ping")

        assert await router.handle_provider_event("fake", b"{}", GOOD) == {"received": True}


class TestSubscriptionEvents:
    @pytest.mark.asyncio
    async def test_agreement_by_request_id(self, processor, subscription_store):
        subscription = await _subscription(subscription_store, status=SubscriptionStatus.INACTIVE, agreement=False)
        subscription.data.agreement = {"request_id": "plan_req", "supplier": "fake"}
        await subscription_store.update(subscription)
        event = ProviderEvent(
            kind=EventKind.SUBSCRIPTION_AGREED,
            supplier="fake",
            correlation_id="plan_req",
            agreement_id="agr_new",
        )

        assert await processor.apply(event, NOW) is True
        assert await processor.apply(event, NOW) is False

        stored = await subscription_store.get(subscription.id)
        assert stored.status == SubscriptionStatus.AGREED
        assert stored.agreement_id == "agr_new"

    @pytest.mark.asyncio
    async def test_renewal_payment_books_paid_order(self, processor, subscription_store, order_store, notifier):
        subscription = await _subscription(subscription_store)
        event = ProviderEvent(
            kind=EventKind.SUBSCRIPTION_PAYMENT_COMPLETED,
            supplier="fake",
            agreement_id="agr_1",
            record=PaymentRecord(
                event_id="inv_1", supplier="fake", status="paid", succeeded=True,
                amount=Decimal("9.99"), received_at=NOW,
            ),
        )

        assert await processor.apply(event, NOW) is True
        assert await processor.apply(event, NOW) is False

        stored = await subscription_store.get(subscription.id)
        assert len(stored.payment_records()) == 1
        assert stored.status == SubscriptionStatus.ACTIVE
        assert len(notifier.paid) == 1
        renewal = await order_store.get(notifier.paid[0])
        assert renewal.status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_provider_cancellation_stops_subscription(self, processor, subscription_store):
        subscription = await _subscription(subscription_store)
        event = ProviderEvent(kind=EventKind.SUBSCRIPTION_CANCELED, supplier="fake", agreement_id="agr_1")

        assert await processor.apply(event, NOW) is True

        stored = await subscription_store.get(subscription.id)
        assert stored.status == SubscriptionStatus.STOPPED
        assert stored.history[-1].action == "canceled"

    @pytest.mark.asyncio
    async def test_unmatched_subscription_event(self, processor):
        event = ProviderEvent(kind=EventKind.SUBSCRIPTION_CANCELED, supplier="fake", agreement_id="agr_unknown")

        assert await processor.apply(event, NOW) is False
