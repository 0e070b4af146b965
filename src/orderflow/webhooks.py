"""
Inbound payment provider events.

``PaymentEventProcessor`` applies a normalized ``ProviderEvent`` to the
matching order or subscription. It is shared by the webhook router and the
payment-result redirect, so both paths go through the same idempotent
append-and-recompute primitives.

``WebhookRouter`` authenticates a raw delivery, normalizes it and always
acknowledges it once authentic: processing failures are logged, never
bounced back to the provider.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from orderflow.logging_config import LogContext, mask_sensitive_data
from orderflow.models import Order, OrderStatus, Subscription, utc_now
from orderflow.providers import EventKind, ProviderEvent, ProviderRegistry
from orderflow.reconciliation import apply_order_payment
from orderflow.stores import LoggingNotifier, Notifier, OrderStore
from orderflow.subscriptions import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)


class PaymentEventProcessor:
    """Routes normalized provider events to orders and subscriptions."""

    def __init__(
        self,
        order_store: OrderStore,
        subscriptions: SubscriptionLifecycleManager,
        notifier: Optional[Notifier] = None,
    ):
        self.order_store = order_store
        self.subscriptions = subscriptions
        self.notifier = notifier or LoggingNotifier()

    async def apply(self, event: ProviderEvent, now: Optional[datetime] = None) -> bool:
        """Apply ``event``.

        Returns:
            True if local state changed
        """
        now = now or utc_now()
        if event.kind == EventKind.ORDER_PAYMENT_COMPLETED:
            return await self._order_payment(event, now)
        if event.kind == EventKind.IGNORED:
            logger.debug(f"Ignoring {event.supplier} event {event.event_type}")
            return False

        subscription = await self._find_subscription(event)
        if subscription is None:
            logger.warning(
                f"No subscription for {event.supplier} event {event.event_type} "
                f"(agreement {event.agreement_id}, correlation {event.correlation_id})"
            )
            return False

        with LogContext(subscription_id=subscription.id):
            if event.kind == EventKind.SUBSCRIPTION_AGREED:
                if not event.agreement_id:
                    return False
                return await self.subscriptions.record_agreement(
                    subscription, event.agreement_id, event.supplier, event.raw, now
                )
            if event.kind == EventKind.SUBSCRIPTION_PAYMENT_COMPLETED:
                if event.record is None:
                    return False
                if not subscription.agreement_id and event.agreement_id:
                    # payment delivered before the agreement confirmation
                    await self.subscriptions.record_agreement(
                        subscription, event.agreement_id, event.supplier, {}, now
                    )
                booked = await self.subscriptions.advance_after_payment(subscription, event.record, now)
                if booked is not None and booked.status == OrderStatus.PAID:
                    await self.notifier.order_paid(booked)
                return booked is not None
            if event.kind == EventKind.SUBSCRIPTION_CANCELED:
                return await self.subscriptions.mark_canceled(subscription, event.raw, now)
        return False

    async def _order_payment(self, event: ProviderEvent, now: datetime) -> bool:
        if event.record is None:
            return False
        order: Optional[Order] = None
        if event.correlation_id:
            order = await self.order_store.find_by_payment_request(event.correlation_id)
        if order is None and event.metadata.get("order_id"):
            order = await self.order_store.get(event.metadata["order_id"])
        if order is None:
            logger.warning(f"No order for {event.supplier} payment {event.correlation_id}")
            return False

        with LogContext(order_id=order.id):
            was_paid = order.status == OrderStatus.PAID
            appended = apply_order_payment(order, event.record, now)
            await self.order_store.update(order)
            if not was_paid and order.status == OrderStatus.PAID:
                await self.notifier.order_paid(order)
        return appended

    async def _find_subscription(self, event: ProviderEvent) -> Optional[Subscription]:
        store = self.subscriptions.store
        subscription = None
        if event.agreement_id:
            subscription = await store.find_by_agreement(event.agreement_id)
        if subscription is None and event.correlation_id:
            subscription = await store.find_by_request(event.correlation_id)
        if subscription is None and event.metadata.get("subscription_id"):
            subscription = await store.get(event.metadata["subscription_id"])
        return subscription


class WebhookRouter:
    """Authenticates and dispatches raw provider webhook deliveries."""

    def __init__(self, providers: ProviderRegistry, processor: PaymentEventProcessor):
        self.providers = providers
        self.processor = processor

    async def handle_provider_event(
        self,
        supplier: str,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> Dict[str, Any]:
        """
        Raises:
            ProviderNotConfiguredError: unknown supplier
            WebhookSignatureError: delivery failed authentication
        """
        provider = self.providers.get(supplier)
        await provider.verify_webhook(payload, headers)

        try:
            event = provider.parse_event(payload)
            logger.info(
                f"Received {supplier} webhook {event.event_type} -> {event.kind.value}"
            )
            logger.debug("Webhook payload: %s", mask_sensitive_data(event.raw))
            await self.processor.apply(event)
        except Exception as e:
            logger.exception(f"Error processing {supplier} webhook: {e}")

        return provider.acknowledge()
