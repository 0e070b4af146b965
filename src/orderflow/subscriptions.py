"""
Subscription lifecycle.

Subscriptions are spun off from subscription-type order items and move
through:

    inactive -> agreed -> active -> suspended | stopped -> finished

Each carries a sanitized template order that is cloned into a new paid order
for every renewal payment. Provider-facing actions (suspend, reactivate)
resolve the agreement id first, call the provider, and only persist the new
status after the provider confirmed it.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from orderflow.billing_dates import calculate_date_end, calculate_date_order_next
from orderflow.context import SessionUser
from orderflow.exceptions import (
    OrderflowAuthorizationError,
    OrderflowException,
    OrderflowNotFoundError,
)
from orderflow.models import (
    BillingPeriod,
    Order,
    OrderDates,
    OrderItem,
    OrderPrices,
    OrderStatus,
    OrderSubscriptionLink,
    PaymentData,
    PaymentRecord,
    Subscription,
    SubscriptionData,
    SubscriptionDates,
    SubscriptionStatus,
    new_id,
    utc_now,
)
from orderflow.policy import PricePolicy
from orderflow.pricing import CalculationMode, calculate_prices
from orderflow.providers import ProviderRegistry
from orderflow.reconciliation import apply_order_payment
from orderflow.stores import OrderStore, SubscriptionStore

logger = logging.getLogger(__name__)

# a payment never moves a subscription out of these
CLOSED_STATUSES = frozenset({SubscriptionStatus.STOPPED, SubscriptionStatus.FINISHED})


@dataclass
class SubscriptionActionResult:
    success: bool
    message: str
    subscription: Optional[Subscription] = None
    agreement: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": {
                "subscription": self.subscription.to_dict() if self.subscription else None,
                "agreement": self.agreement,
            },
        }


@dataclass
class CheckSummary:
    """Outcome of one daily subscription sweep."""
    suspended: List[str] = field(default_factory=list)
    finished: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"suspended": self.suspended, "finished": self.finished, "errors": self.errors}


@dataclass
class ImportSummary:
    imported: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"imported": self.imported, "errors": self.errors}


class SubscriptionImportRow(BaseModel):
    """One subscription migrated from another billing system."""
    user_id: str
    order_item_name: str
    period: BillingPeriod = BillingPeriod.MONTH
    duration: int = Field(default=1, ge=1)
    cycles: int = Field(default=0, ge=0)
    price: Decimal = Field(ge=0)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    date_start: datetime
    date_order_next: Optional[datetime] = None
    date_end: Optional[datetime] = None
    agreement_id: Optional[str] = None
    supplier: Optional[str] = None
    order_origin_id: Optional[str] = None
    product: Dict[str, Any] = Field(default_factory=dict)
    order: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("date_start", "date_order_next", "date_end")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class SubscriptionLifecycleManager:
    """
    Creates subscriptions from orders and drives them through their lifecycle.

    Features:
    - Subscription spin-off with a sanitized template order
    - Idempotent payment handling (duplicate provider events are ignored)
    - Renewal orders cloned from the template
    - Provider-confirmed suspend / reactivate
    - Daily sweep of overdue and ended subscriptions
    - Bulk import for admins
    """

    def __init__(
        self,
        store: SubscriptionStore,
        order_store: OrderStore,
        providers: ProviderRegistry,
        policy: PricePolicy,
        tolerance_days: int = 1,
    ):
        self.store = store
        self.order_store = order_store
        self.providers = providers
        self.policy = policy
        self.tolerance_days = tolerance_days

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    @staticmethod
    def build_template_order(order: Order, item: OrderItem) -> Dict[str, Any]:
        """Sanitized copy of ``order`` holding only ``item``, used for renewals."""
        template = copy.deepcopy(order)
        template.status = OrderStatus.CART
        template.external_id = None
        template.external_code = None
        template.notes = None
        template.dates = OrderDates()
        template.prices = OrderPrices(currency=order.prices.currency)
        template.data.payment_data = PaymentData(
            codename=order.data.payment_data.codename,
            name=dict(order.data.payment_data.name),
        )
        template.data.subscription = None
        template.data.canceled_user_id = None

        template_item = copy.deepcopy(item)
        template_item.paid = False
        template_item.subscription_id = None
        template_item.response_action = None
        template.items = [template_item]

        document = template.to_dict()
        document["id"] = None
        return document

    async def create_from_order(self, order: Order, now: Optional[datetime] = None) -> List[Subscription]:
        """Spin off one ``inactive`` subscription per subscription-type item.

        Links the new ids back into ``order`` (which the caller persists).
        """
        now = now or utc_now()
        created: List[Subscription] = []
        link = order.data.subscription or OrderSubscriptionLink(created=now)

        for item in order.subscription_items():
            if item.subscription_id:
                continue
            policy = item.subscription
            period = policy.period if policy else BillingPeriod.MONTH
            duration = policy.duration if policy else 1
            cycles = policy.cycles if policy else 0

            subscription = Subscription(
                user_id=order.user.id,
                order_origin_id=order.id,
                order_item_name=item.name,
                period=period,
                duration=duration,
                cycles=cycles,
                status=SubscriptionStatus.INACTIVE,
                dates=SubscriptionDates(
                    date_start=now,
                    date_order_next=now,
                    date_end=calculate_date_end(now, period, duration, cycles),
                    date_created=now,
                    date_updated=now,
                ),
                price=item.price * item.amount,
                data=SubscriptionData(
                    product=item.to_dict(),
                    order=self.build_template_order(order, item),
                ),
            )
            subscription.add_history("created", "from order", {"order_id": order.id}, now)
            await self.store.insert(subscription)

            item.subscription_id = subscription.id
            link.ids.append({"id": subscription.id, "item_id": item.id})
            created.append(subscription)
            logger.info(f"Created subscription {subscription.id} from order {order.id}")

        if created:
            order.data.subscription = link
        return created

    # -------------------------------------------------------------------------
    # Provider events
    # -------------------------------------------------------------------------

    async def record_agreement(
        self,
        subscription: Subscription,
        agreement_id: str,
        supplier: str,
        raw: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Store the provider agreement; repeated confirmations are no-ops.

        Returns:
            True if the subscription changed
        """
        now = now or utc_now()
        if subscription.agreement_id == agreement_id and any(
            h.action == "agreed" for h in subscription.history
        ):
            return False

        subscription.data.agreement.update({"id": agreement_id, "supplier": supplier})
        if subscription.status == SubscriptionStatus.INACTIVE:
            subscription.status = SubscriptionStatus.AGREED
        subscription.add_history(
            "agreed",
            supplier,
            {"agreement_id": agreement_id, "raw": raw or {}},
            now,
        )
        subscription.dates.date_updated = now
        await self.store.update(subscription)
        logger.info(f"Subscription {subscription.id} agreed as {supplier}:{agreement_id}")
        return True

    def create_paid_subscription_order(
        self,
        subscription: Subscription,
        record: PaymentRecord,
        now: Optional[datetime] = None,
    ) -> Order:
        """Clone the template into a new renewal order and apply the payment."""
        now = now or utc_now()
        order = Order.from_dict(copy.deepcopy(subscription.data.order))
        order.id = new_id("ord")
        order.status = OrderStatus.CART
        order.dates = OrderDates(date_created=now, date_changed=now)
        for item in order.items:
            item.subscription_id = subscription.id
            item.paid = True
        order.data.subscription = OrderSubscriptionLink(
            created=now,
            ids=[{"id": subscription.id, "item_id": item.id} for item in order.items],
        )

        order = calculate_prices(order, self.policy, CalculationMode.ALL, with_fees=False)
        apply_order_payment(order, record, now)
        return order

    async def advance_after_payment(
        self,
        subscription: Subscription,
        record: PaymentRecord,
        now: Optional[datetime] = None,
    ) -> Optional[Order]:
        """Apply one provider payment to a subscription.

        Returns:
            The order the payment was booked on, or None for duplicates and
            failed payments
        """
        now = now or utc_now()
        if any(h.data.get("event_id") == record.event_id for h in subscription.payment_records()):
            logger.info(f"Duplicate payment event {record.event_id} for subscription {subscription.id}")
            return None

        subscription.add_history(
            "payment",
            record.supplier,
            {
                "event_id": record.event_id,
                "status": record.status,
                "succeeded": record.succeeded,
                "amount": str(record.amount),
                "currency": record.currency,
            },
            now,
        )
        subscription.dates.date_updated = now
        if not record.succeeded:
            await self.store.update(subscription)
            return None

        paid_count = sum(1 for h in subscription.payment_records() if h.data.get("succeeded"))
        booked: Optional[Order] = None

        if paid_count == 1 and subscription.order_origin_id:
            booked = await self.order_store.get(subscription.order_origin_id)
            if booked is not None:
                apply_order_payment(booked, record, now)
                for item in booked.items:
                    if item.subscription_id == subscription.id:
                        item.paid = True
                await self.order_store.update(booked)
        else:
            booked = self.create_paid_subscription_order(subscription, record, now)
            await self.order_store.insert(booked)
            subscription.add_history("prolonged", record.supplier, {"order_id": booked.id}, now)

        if subscription.status in CLOSED_STATUSES:
            # late delivery after the subscription ended; money is booked, state stays
            logger.warning(
                f"Payment {record.event_id} arrived for {subscription.status.value} "
                f"subscription {subscription.id}"
            )
        elif subscription.cycles > 0 and paid_count >= subscription.cycles:
            subscription.status = SubscriptionStatus.STOPPED
            subscription.dates.date_stopped = now
            subscription.add_history("stopped", "cycles", {"cycles": subscription.cycles}, now)
        elif subscription.dates.date_end is not None and subscription.dates.date_end <= now:
            subscription.status = SubscriptionStatus.FINISHED
            subscription.add_history("finished", "date end", {}, now)
        else:
            previous = subscription.dates.date_order_next or now
            subscription.dates.date_order_next = calculate_date_order_next(
                subscription.period,
                subscription.duration,
                previous,
            )
            if subscription.status != SubscriptionStatus.SUSPENDED:
                subscription.status = SubscriptionStatus.ACTIVE

        await self.store.update(subscription)
        logger.info(
            f"Subscription {subscription.id} payment {record.event_id} booked "
            f"({paid_count} paid, status {subscription.status.value})"
        )
        return booked

    async def mark_canceled(
        self,
        subscription: Subscription,
        raw: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Provider-side cancellation."""
        now = now or utc_now()
        if any(h.action == "canceled" for h in subscription.history):
            return False
        if subscription.status != SubscriptionStatus.FINISHED:
            subscription.status = SubscriptionStatus.STOPPED
        subscription.dates.date_stopped = now
        subscription.dates.date_updated = now
        subscription.add_history("canceled", subscription.supplier or "provider", {"raw": raw or {}}, now)
        await self.store.update(subscription)
        logger.info(f"Subscription {subscription.id} canceled by provider")
        return True

    # -------------------------------------------------------------------------
    # Suspend / reactivate
    # -------------------------------------------------------------------------

    @staticmethod
    def resolve_agreement(subscription: Subscription) -> Dict[str, Any]:
        """Agreement id and supplier, from the stored agreement or the
        ``agreed`` history entry."""
        agreement = dict(subscription.data.agreement)
        if agreement.get("id"):
            return agreement
        for record in reversed(subscription.history):
            if record.action == "agreed" and record.data.get("agreement_id"):
                agreement.setdefault("supplier", record.type)
                agreement["id"] = record.data["agreement_id"]
                return agreement
        return agreement

    async def _load_for(self, subscription_id: str, actor: Optional[SessionUser]) -> Subscription:
        subscription = await self.store.get(subscription_id)
        if subscription is None:
            raise OrderflowNotFoundError("Subscription", subscription_id)
        if actor is not None and not actor.is_admin and actor.id != subscription.user_id:
            raise OrderflowAuthorizationError("Not allowed to manage this subscription")
        return subscription

    async def _provider_action(
        self,
        subscription: Subscription,
        action: str,
        reason: str,
        now: datetime,
    ) -> SubscriptionActionResult:
        agreement = self.resolve_agreement(subscription)
        agreement_id = agreement.get("id")
        if not agreement_id:
            return await self._fail(subscription, action, "Missing agreement id", agreement, now)

        try:
            provider = self.providers.get(agreement.get("supplier") or "")
            if action == "suspend":
                result = await provider.suspend(agreement_id, reason)
            else:
                result = await provider.reactivate(agreement_id, reason)
        except OrderflowException as e:
            return await self._fail(subscription, action, e.message, agreement, now)

        if not result.success:
            return await self._fail(subscription, action, result.message or "Provider refused", agreement, now)
        return SubscriptionActionResult(success=True, message="ok", subscription=subscription, agreement=agreement)

    async def _fail(
        self,
        subscription: Subscription,
        action: str,
        message: str,
        agreement: Dict[str, Any],
        now: datetime,
    ) -> SubscriptionActionResult:
        subscription.add_history("error", action, {"message": message}, now)
        subscription.dates.date_updated = now
        await self.store.update(subscription)
        logger.warning(f"Subscription {subscription.id} {action} failed: {message}")
        return SubscriptionActionResult(
            success=False,
            message=message,
            subscription=subscription,
            agreement=agreement,
        )

    async def suspend(
        self,
        subscription_id: str,
        actor: Optional[SessionUser] = None,
        reason: str = "Suspended by request",
        now: Optional[datetime] = None,
    ) -> SubscriptionActionResult:
        now = now or utc_now()
        subscription = await self._load_for(subscription_id, actor)
        if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.AGREED):
            return SubscriptionActionResult(
                success=False,
                message=f"Subscription is {subscription.status.value}",
                subscription=subscription,
            )

        outcome = await self._provider_action(subscription, "suspend", reason, now)
        if not outcome.success:
            return outcome
        subscription.status = SubscriptionStatus.SUSPENDED
        subscription.dates.date_updated = now
        subscription.add_history("suspended", outcome.agreement.get("supplier") or "", {"reason": reason}, now)
        await self.store.update(subscription)
        logger.info(f"Subscription {subscription.id} suspended")
        return outcome

    async def reactivate(
        self,
        subscription_id: str,
        actor: Optional[SessionUser] = None,
        reason: str = "Reactivated by request",
        now: Optional[datetime] = None,
    ) -> SubscriptionActionResult:
        now = now or utc_now()
        subscription = await self._load_for(subscription_id, actor)
        if subscription.status != SubscriptionStatus.SUSPENDED:
            return SubscriptionActionResult(
                success=False,
                message=f"Subscription is {subscription.status.value}",
                subscription=subscription,
            )

        outcome = await self._provider_action(subscription, "reactivate", reason, now)
        if not outcome.success:
            return outcome
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.dates.date_updated = now
        subscription.add_history("reactivated", outcome.agreement.get("supplier") or "", {"reason": reason}, now)
        await self.store.update(subscription)
        logger.info(f"Subscription {subscription.id} reactivated")
        return outcome

    # -------------------------------------------------------------------------
    # Batch operations
    # -------------------------------------------------------------------------

    async def check_subscriptions(self, now: Optional[datetime] = None) -> CheckSummary:
        """Daily sweep: suspend overdue subscriptions, finish ended ones."""
        now = now or utc_now()
        check_date = now - timedelta(days=self.tolerance_days)
        summary = CheckSummary()

        candidates = await self.store.list_by_status([SubscriptionStatus.ACTIVE, SubscriptionStatus.STOPPED])
        for subscription in candidates:
            try:
                await self._check_one(subscription, now, check_date, summary)
            except Exception as e:
                logger.exception(f"Subscription check failed for {subscription.id}")
                summary.errors.append({"id": subscription.id, "error": str(e)})

        logger.info(
            f"Subscription check: {len(summary.suspended)} suspended, "
            f"{len(summary.finished)} finished, {len(summary.errors)} errors"
        )
        return summary

    async def _check_one(
        self,
        subscription: Subscription,
        now: datetime,
        check_date: datetime,
        summary: CheckSummary,
    ) -> None:
        date_end = subscription.dates.date_end
        if date_end is not None and date_end <= now:
            if subscription.status == SubscriptionStatus.ACTIVE and self.resolve_agreement(subscription).get("id"):
                outcome = await self._provider_action(subscription, "suspend", "Subscription ended", now)
                if not outcome.success:
                    summary.errors.append({"id": subscription.id, "error": outcome.message})
                    return
            subscription.status = SubscriptionStatus.FINISHED
            subscription.dates.date_updated = now
            subscription.add_history("finished", "check", {}, now)
            await self.store.update(subscription)
            summary.finished.append(subscription.id)
            return

        next_order = subscription.dates.date_order_next
        if (
            subscription.status == SubscriptionStatus.ACTIVE
            and next_order is not None
            and next_order <= check_date
            and (date_end is None or date_end >= check_date)
        ):
            outcome = await self.suspend(subscription.id, reason="Payment overdue", now=now)
            if outcome.success:
                summary.suspended.append(subscription.id)
            else:
                summary.errors.append({"id": subscription.id, "error": outcome.message})

    async def import_subscriptions(
        self,
        rows: Iterable[Dict[str, Any]],
        principal: Optional[SessionUser],
        now: Optional[datetime] = None,
    ) -> ImportSummary:
        """Bulk-insert subscriptions; admins only.

        Raises:
            OrderflowAuthorizationError: caller is not an admin
        """
        if principal is None or not principal.is_admin:
            raise OrderflowAuthorizationError("Subscription import requires admin")

        now = now or utc_now()
        summary = ImportSummary()
        for index, raw in enumerate(rows):
            try:
                row = SubscriptionImportRow.model_validate(raw)
            except ValidationError as e:
                summary.errors.append({"row": index, "error": str(e)})
                continue

            date_end = row.date_end or calculate_date_end(row.date_start, row.period, row.duration, row.cycles)
            agreement: Dict[str, Any] = {}
            if row.agreement_id:
                agreement = {"id": row.agreement_id, "supplier": row.supplier}
            subscription = Subscription(
                user_id=row.user_id,
                order_origin_id=row.order_origin_id,
                order_item_name=row.order_item_name,
                period=row.period,
                duration=row.duration,
                cycles=row.cycles,
                status=row.status,
                dates=SubscriptionDates(
                    date_start=row.date_start,
                    date_order_next=row.date_order_next or row.date_start,
                    date_end=date_end,
                    date_created=now,
                    date_updated=now,
                ),
                price=row.price,
                data=SubscriptionData(product=row.product, order=row.order, agreement=agreement),
            )
            subscription.add_history("imported", "import", {"by": principal.id}, now)
            try:
                await self.store.insert(subscription)
            except OrderflowException as e:
                summary.errors.append({"row": index, "error": e.message})
                continue
            summary.imported.append(subscription.id)

        logger.info(f"Imported {len(summary.imported)} subscriptions, {len(summary.errors)} rejected")
        return summary
