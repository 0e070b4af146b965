from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from orderflow.context import SessionUser
from orderflow.exceptions import OrderflowAuthorizationError, OrderflowNotFoundError
from orderflow.models import (
    OrderStatus,
    OrderUser,
    PaymentRecord,
    Subscription,
    SubscriptionDates,
    SubscriptionStatus,
)
from orderflow.pricing import calculate_prices

from conftest import NOW, item_doc, make_order, subscription_item_doc


def _payment(event_id, amount="9.99", succeeded=True):
    return PaymentRecord(
        event_id=event_id,
        supplier="fake",
        status="paid" if succeeded else "failed",
        succeeded=succeeded,
        amount=Decimal(amount),
        received_at=NOW,
    )


async def _origin_order(order_store, policy, cycles=3):
    order = make_order([subscription_item_doc(cycles=cycles)], status=OrderStatus.SAVED)
    order.user = OrderUser(id="usr_customer", email="jane@example.com")
    order = calculate_prices(order, policy)
    await order_store.insert(order)
    return order


async def _subscription(store, status=SubscriptionStatus.ACTIVE, agreement=True, **dates):
    subscription = Subscription(
        user_id="usr_customer",
        order_item_name="Monthly box",
        status=status,
        price=Decimal("9.99"),
        dates=SubscriptionDates(
            date_start=NOW - timedelta(days=60),
            date_order_next=dates.get("date_order_next", NOW + timedelta(days=10)),
            date_end=dates.get("date_end", NOW + timedelta(days=365)),
        ),
    )
    if agreement:
        subscription.data.agreement = {"id": "agr_1", "supplier": "fake"}
    await store.insert(subscription)
    return subscription


class TestCreateFromOrder:
    @pytest.mark.asyncio
    async def test_one_inactive_subscription_per_item(self, manager, order_store, policy):
        order = await _origin_order(order_store, policy)
        order.items.append(make_order([item_doc()]).items[0])

        created = await manager.create_from_order(order, NOW)

        assert len(created) == 1
        subscription = created[0]
        assert subscription.status == SubscriptionStatus.INACTIVE
        assert subscription.dates.date_order_next == NOW
        assert subscription.dates.date_end == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert subscription.cycles == 3
        assert subscription.price == Decimal("9.99")
        assert subscription.history[0].action == "created"
        assert order.items[0].subscription_id == subscription.id
        assert order.data.subscription.ids == [{"id": subscription.id, "item_id": "sub-item"}]

    @pytest.mark.asyncio
    async def test_template_order_is_sanitized(self, manager, order_store, policy):
        order = await _origin_order(order_store, policy)
        order.external_id = "EXT-1"

        subscription = (await manager.create_from_order(order, NOW))[0]
        template = subscription.data.order

        assert template["id"] is None
        assert template["status"] == "cart"
        assert template["external_id"] is None
        assert template["data"]["payment_data"]["history"] == []
        assert [i["id"] for i in template["items"]] == ["sub-item"]

    @pytest.mark.asyncio
    async def test_linked_items_are_skipped(self, manager, order_store, policy):
        order = await _origin_order(order_store, policy)
        await manager.create_from_order(order, NOW)

        assert await manager.create_from_order(order, NOW) == []


class TestPayments:
    @pytest.mark.asyncio
    async def test_cycles_exhausted_after_third_payment(self, manager, order_store, subscription_store, policy):
        order = await _origin_order(order_store, policy, cycles=3)
        subscription = (await manager.create_from_order(order, NOW))[0]
        await order_store.update(order)
        await manager.record_agreement(subscription, "agr_1", "fake", {}, NOW)
        assert subscription.status == SubscriptionStatus.AGREED

        first = await manager.advance_after_payment(subscription, _payment("pay_1"), NOW)
        assert first.id == order.id
        assert first.status == OrderStatus.PAID
        assert first.items[0].paid is True
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.dates.date_order_next == datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)

        second = await manager.advance_after_payment(subscription, _payment("pay_2"), NOW)
        assert second.id != order.id
        assert second.status == OrderStatus.PAID
        assert second.prices.price_total == Decimal("9.99")
        assert subscription.status == SubscriptionStatus.ACTIVE

        await manager.advance_after_payment(subscription, _payment("pay_3"), NOW)
        assert subscription.status == SubscriptionStatus.STOPPED
        assert subscription.dates.date_stopped == NOW

        stored = await subscription_store.get(subscription.id)
        actions = [h.action for h in stored.history]
        assert actions.count("payment") == 3
        assert actions.count("prolonged") == 2
        assert actions[-1] == "stopped"

    @pytest.mark.asyncio
    async def test_duplicate_payment_ignored(self, manager, order_store, policy):
        order = await _origin_order(order_store, policy)
        subscription = (await manager.create_from_order(order, NOW))[0]

        assert await manager.advance_after_payment(subscription, _payment("pay_1"), NOW) is not None
        assert await manager.advance_after_payment(subscription, _payment("pay_1"), NOW) is None
        assert len(subscription.payment_records()) == 1

    @pytest.mark.asyncio
    async def test_failed_payment_logged_only(self, manager, order_store, policy):
        order = await _origin_order(order_store, policy)
        subscription = (await manager.create_from_order(order, NOW))[0]

        assert await manager.advance_after_payment(subscription, _payment("pay_x", succeeded=False), NOW) is None
        assert subscription.status == SubscriptionStatus.INACTIVE
        assert (await order_store.get(order.id)).status == OrderStatus.SAVED

    @pytest.mark.asyncio
    async def test_late_payment_after_provider_cancel_keeps_stopped(self, manager, order_store, policy):
        order = await _origin_order(order_store, policy)
        subscription = (await manager.create_from_order(order, NOW))[0]
        await manager.record_agreement(subscription, "agr_1", "fake", {}, NOW)
        await manager.mark_canceled(subscription, {"id": "evt"}, NOW)
        next_order_date = subscription.dates.date_order_next

        booked = await manager.advance_after_payment(subscription, _payment("pay_late"), NOW + timedelta(hours=1))

        assert subscription.status == SubscriptionStatus.STOPPED
        assert subscription.dates.date_order_next == next_order_date
        assert [h.action for h in subscription.history][-1] == "payment"
        assert booked.id == order.id
        assert booked.status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_late_payment_on_finished_subscription(self, manager, subscription_store):
        subscription = await _subscription(subscription_store, SubscriptionStatus.FINISHED)
        next_order_date = subscription.dates.date_order_next

        await manager.advance_after_payment(subscription, _payment("pay_late"), NOW)

        stored = await subscription_store.get(subscription.id)
        assert stored.status == SubscriptionStatus.FINISHED
        assert stored.dates.date_order_next == next_order_date

    @pytest.mark.asyncio
    async def test_payment_while_suspended_stays_suspended(self, manager, order_store, policy):
        order = await _origin_order(order_store, policy)
        subscription = (await manager.create_from_order(order, NOW))[0]
        await manager.advance_after_payment(subscription, _payment("pay_1"), NOW)
        subscription.status = SubscriptionStatus.SUSPENDED

        await manager.advance_after_payment(subscription, _payment("pay_2"), NOW)

        assert subscription.status == SubscriptionStatus.SUSPENDED
        assert subscription.dates.date_order_next == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_record_agreement_is_idempotent(self, manager, subscription_store):
        subscription = await _subscription(subscription_store, SubscriptionStatus.INACTIVE, agreement=False)

        assert await manager.record_agreement(subscription, "agr_9", "fake", {}, NOW) is True
        assert await manager.record_agreement(subscription, "agr_9", "fake", {}, NOW) is False
        assert subscription.agreement_id == "agr_9"
        assert subscription.supplier == "fake"

    @pytest.mark.asyncio
    async def test_provider_cancellation(self, manager, subscription_store):
        subscription = await _subscription(subscription_store)

        assert await manager.mark_canceled(subscription, {"id": "evt"}, NOW) is True
        assert await manager.mark_canceled(subscription, {"id": "evt"}, NOW) is False
        assert subscription.status == SubscriptionStatus.STOPPED


class TestSuspendReactivate:
    @pytest.mark.asyncio
    async def test_suspend_without_agreement_records_error(self, manager, subscription_store, fake_provider):
        subscription = await _subscription(subscription_store, agreement=False)

        result = await manager.suspend(subscription.id, now=NOW)

        assert result.success is False
        assert result.message == "Missing agreement id"
        stored = await subscription_store.get(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.history[-1].action == "error"
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_suspend_and_reactivate(self, manager, subscription_store, fake_provider, customer):
        subscription = await _subscription(subscription_store)

        suspended = await manager.suspend(subscription.id, actor=customer, reason="holiday", now=NOW)
        assert suspended.success is True
        assert suspended.to_dict()["data"]["agreement"] == {"id": "agr_1", "supplier": "fake"}
        assert (await subscription_store.get(subscription.id)).status == SubscriptionStatus.SUSPENDED

        reactivated = await manager.reactivate(subscription.id, actor=customer, now=NOW)
        assert reactivated.success is True
        assert (await subscription_store.get(subscription.id)).status == SubscriptionStatus.ACTIVE
        assert [c[0] for c in fake_provider.calls] == ["suspend", "reactivate"]

    @pytest.mark.asyncio
    async def test_agreement_resolved_from_history(self, manager, subscription_store, fake_provider):
        subscription = await _subscription(subscription_store, agreement=False)
        subscription.add_history("agreed", "fake", {"agreement_id": "agr_hist"}, NOW)
        await subscription_store.update(subscription)

        result = await manager.suspend(subscription.id, now=NOW)

        assert result.success is True
        assert fake_provider.calls[0][1] == "agr_hist"

    @pytest.mark.asyncio
    async def test_provider_refusal_keeps_status(self, manager, subscription_store, fake_provider):
        fake_provider.succeed = False
        subscription = await _subscription(subscription_store)

        result = await manager.suspend(subscription.id, now=NOW)

        assert result.success is False
        stored = await subscription_store.get(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.history[-1].data == {"message": "refused"}

    @pytest.mark.asyncio
    async def test_reactivate_requires_suspended(self, manager, subscription_store):
        subscription = await _subscription(subscription_store)

        result = await manager.reactivate(subscription.id, now=NOW)

        assert result.success is False
        assert result.message == "Subscription is active"

    @pytest.mark.asyncio
    async def test_other_user_forbidden(self, manager, subscription_store):
        subscription = await _subscription(subscription_store)

        with pytest.raises(OrderflowAuthorizationError):
            await manager.suspend(subscription.id, actor=SessionUser(id="usr_other"), now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, manager):
        with pytest.raises(OrderflowNotFoundError):
            await manager.suspend("sub_missing", now=NOW)


class TestCheckSubscriptions:
    @pytest.mark.asyncio
    async def test_sweep_suspends_overdue_and_finishes_ended(self, manager, subscription_store, fake_provider):
        overdue = await _subscription(subscription_store, date_order_next=NOW - timedelta(days=3))
        ended = await _subscription(subscription_store, date_end=NOW - timedelta(days=1))
        stopped = await _subscription(
            subscription_store,
            SubscriptionStatus.STOPPED,
            date_end=NOW - timedelta(days=1),
        )
        current = await _subscription(subscription_store)
        within_tolerance = await _subscription(subscription_store, date_order_next=NOW - timedelta(hours=12))

        summary = await manager.check_subscriptions(NOW)

        assert summary.suspended == [overdue.id]
        assert sorted(summary.finished) == sorted([ended.id, stopped.id])
        assert summary.errors == []
        assert (await subscription_store.get(overdue.id)).status == SubscriptionStatus.SUSPENDED
        assert (await subscription_store.get(ended.id)).status == SubscriptionStatus.FINISHED
        assert (await subscription_store.get(stopped.id)).status == SubscriptionStatus.FINISHED
        assert (await subscription_store.get(current.id)).status == SubscriptionStatus.ACTIVE
        assert (await subscription_store.get(within_tolerance.id)).status == SubscriptionStatus.ACTIVE
        # provider is asked to stop billing for the overdue and the ended active subscription only
        assert len(fake_provider.calls) == 2

    @pytest.mark.asyncio
    async def test_sweep_reports_provider_failure(self, manager, subscription_store, fake_provider):
        fake_provider.succeed = False
        overdue = await _subscription(subscription_store, date_order_next=NOW - timedelta(days=3))

        summary = await manager.check_subscriptions(NOW)

        assert summary.suspended == []
        assert summary.errors == [{"id": overdue.id, "error": "refused"}]


class TestImport:
    ROW = {
        "user_id": "usr_customer",
        "order_item_name": "Monthly box",
        "price": "9.99",
        "date_start": "2024-01-01T00:00:00",
        "agreement_id": "agr_imported",
        "supplier": "fake",
    }

    @pytest.mark.asyncio
    async def test_non_admin_rejected(self, manager, customer):
        with pytest.raises(OrderflowAuthorizationError) as exc_info:
            await manager.import_subscriptions([self.ROW], customer, NOW)
        assert exc_info.value.http_status == 403

    @pytest.mark.asyncio
    async def test_admin_import(self, manager, subscription_store, admin):
        bad_row = {k: v for k, v in self.ROW.items() if k != "date_start"}

        summary = await manager.import_subscriptions([self.ROW, bad_row], admin, NOW)

        assert len(summary.imported) == 1
        assert summary.errors[0]["row"] == 1
        imported = await subscription_store.get(summary.imported[0])
        assert imported.status == SubscriptionStatus.ACTIVE
        assert imported.agreement_id == "agr_imported"
        assert imported.dates.date_start == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert imported.dates.date_end.year == 3024
        assert imported.history[0].action == "imported"
