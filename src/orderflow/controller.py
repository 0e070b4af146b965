"""
Order progress controller.

Drives the checkout wizard: every ``progress`` call loads the working order
for the caller's cart, merges the partial input, re-runs the readiness
pipeline and persists the result. Once an order is confirmed it is saved,
optionally handed to the order-intake service, and the accepted actions run
(clear cart, spin off subscriptions, notify).

Payment entry points (``payment`` / ``payment_result``) and the cart
maintenance job live here as well.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from orderflow.context import CheckoutContext, SessionUser
from orderflow.exceptions import (
    IntakeError,
    OrderflowAuthenticationError,
    OrderflowAuthorizationError,
    OrderflowNotFoundError,
    OrderflowValidationError,
    ProviderNotConfiguredError,
)
from orderflow.intake import IntakeResponse, IntakeStatus, OrderIntakeClient
from orderflow.logging_config import LogContext
from orderflow.merge import merge_sent_params
from orderflow.models import Order, OrderStatus, ZERO, utc_now
from orderflow.policy import PricePolicy
from orderflow.pricing import CalculationMode, calculate_prices
from orderflow.providers import EventKind, ProviderRegistry, ReturnUrls
from orderflow.readiness import (
    CheckoutErrors,
    CheckoutIssue,
    ReadinessPipeline,
    ReadinessResult,
)
from orderflow.reconciliation import merge_intake_response
from orderflow.state_machine import advance_if_allowed, transition
from orderflow.stores import CartStore, LoggingNotifier, Notifier, OrderStore, UserDirectory
from orderflow.subscriptions import SubscriptionLifecycleManager
from orderflow.tokens import OrderTokenSigner
from orderflow.webhooks import PaymentEventProcessor

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = frozenset({OrderStatus.SAVED, OrderStatus.SENT})

PAYMENT_ACTIONS = ("checkout", "subscribe")


# =============================================================================
# Client input
# =============================================================================
# Only the fields below are client-writable. Unknown keys (status, prices,
# items, external ids, payment state) are dropped during validation.

class AddressInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    name_first: Optional[str] = None
    name_last: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    street: Optional[str] = None
    zip: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class AddressesInput(BaseModel):
    invoice_address: Optional[AddressInput] = None
    delivery_address: Optional[AddressInput] = None


class DeliveryInput(BaseModel):
    # subtype -> codename; a bare codename is filed under "physical"
    codename: Union[str, Dict[str, Union[str, Dict[str, Optional[str]], None]]] = Field(default_factory=dict)


class PaymentInput(BaseModel):
    codename: Optional[str] = None


class DataInput(BaseModel):
    delivery_data: DeliveryInput = Field(default_factory=DeliveryInput)
    payment_data: PaymentInput = Field(default_factory=PaymentInput)
    coupon_data: Optional[Dict[str, Any]] = None


class DatesInput(BaseModel):
    user_confirmation: Optional[datetime] = None


class ProgressRequest(BaseModel):
    """Client-writable part of an order for one checkout wizard step."""

    addresses: AddressesInput = Field(default_factory=AddressesInput)
    data: DataInput = Field(default_factory=DataInput)
    dates: DatesInput = Field(default_factory=DatesInput)
    country: Optional[str] = None
    notes: Optional[str] = None


def sanitize_input(partial: Any) -> Dict[str, Any]:
    """Validate a client progress payload and keep only client-writable fields.

    Raises:
        OrderflowValidationError: a field has the wrong shape or type
    """
    try:
        request = ProgressRequest.model_validate(partial)
    except ValidationError as e:
        error = e.errors()[0]
        location = ".".join(str(part) for part in error["loc"]) or "body"
        raise OrderflowValidationError(f"Invalid {location}: {error['msg']}", field=location) from e
    return request.model_dump(exclude_unset=True)


@dataclass
class ProgressOutcome:
    order: Order
    result: ReadinessResult
    errors: CheckoutErrors
    intake: Optional[IntakeResponse] = None
    warnings: List[str] = field(default_factory=list)
    token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"order": self.order.to_dict(), "result": self.result.to_dict()}
        if self.errors:
            body["errors"] = self.errors.to_dict()
        if self.intake is not None:
            body["intake"] = self.intake.to_dict()
        if self.warnings:
            body["warnings"] = list(self.warnings)
        return body


class OrderProgressController:
    """Checkout wizard, order payments and order maintenance."""

    def __init__(
        self,
        order_store: OrderStore,
        cart_store: CartStore,
        users: UserDirectory,
        subscriptions: SubscriptionLifecycleManager,
        providers: ProviderRegistry,
        policy: PricePolicy,
        token_signer: OrderTokenSigner,
        notifier: Optional[Notifier] = None,
        intake: Optional[OrderIntakeClient] = None,
        public_base_url: str = "http://localhost:8000",
        stale_cart_days: int = 30,
    ):
        self.order_store = order_store
        self.cart_store = cart_store
        self.users = users
        self.subscriptions = subscriptions
        self.providers = providers
        self.policy = policy
        self.token_signer = token_signer
        self.notifier = notifier or LoggingNotifier()
        self.intake = intake
        self.public_base_url = public_base_url.rstrip("/")
        self.stale_cart_days = stale_cart_days
        self.readiness = ReadinessPipeline(policy, token_signer)
        self.events = PaymentEventProcessor(order_store, subscriptions, self.notifier)

    # -------------------------------------------------------------------------
    # Checkout wizard
    # -------------------------------------------------------------------------

    async def _working_order(self, context: CheckoutContext, now: datetime) -> tuple[Order, bool]:
        """Load the cart's order, or start a new one. Returns (order, is_new)."""
        cart = await self.cart_store.get_or_create(context.cart_id)
        order = None
        if cart.order_id:
            order = await self.order_store.get(cart.order_id)
        is_new = order is None or order.status != OrderStatus.CART
        if is_new:
            order = Order()
            order.prices.currency = self.policy.currency
            order.dates.date_created = now
        order.items = cart.order_items()
        if context.ip:
            order.ip = context.ip
        if context.lang:
            order.lang = context.lang
        return order, is_new

    async def manage_user(
        self,
        order: Order,
        context: CheckoutContext,
        partial_input: Dict[str, Any],
        errors: CheckoutErrors,
    ) -> None:
        """Register the customer inline when they check out without an account."""
        if context.is_authenticated or self.token_signer.read(context.unverified_token):
            return
        invoice = (partial_input.get("addresses") or {}).get("invoice_address") or {}
        email = (invoice.get("email") or "").strip() if isinstance(invoice, dict) else ""
        if not email:
            return

        if order.user.id and (order.user.email or "").lower() == email.lower():
            context.user_new = True
            return
        if await self.users.email_exists(email):
            errors.user_errors.append(CheckoutIssue("email", "exists"))
            return

        order.user = await self.users.create_user(email, {"username": invoice.get("username")})
        context.user_new = True

    async def progress(
        self,
        context: CheckoutContext,
        partial_input: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ProgressOutcome:
        """Advance the checkout for ``context``'s cart by one wizard step."""
        now = now or utc_now()
        partial_input = sanitize_input(partial_input or {})
        order, is_new = await self._working_order(context, now)
        errors = CheckoutErrors()

        with LogContext(order_id=order.id):
            if not partial_input:
                outcome = self.readiness.evaluate(order, context, errors, now)
                return ProgressOutcome(
                    order=outcome.order,
                    result=outcome.result,
                    errors=outcome.errors,
                    token=context.issued_token,
                )

            await self.manage_user(order, context, partial_input, errors)

            document = merge_sent_params(order.to_dict(), partial_input)
            order = Order.from_dict(document)
            order.dates.date_changed = now

            outcome = self.readiness.evaluate(order, context, errors, now)
            order = outcome.order
            if outcome.result.success and order.status == OrderStatus.CART:
                transition(order, OrderStatus.SAVED, now)

            if is_new:
                await self.order_store.insert(order)
                cart = await self.cart_store.get_or_create(context.cart_id)
                cart.order_id = order.id
                await self.cart_store.save(cart)
            else:
                await self.order_store.update(order)

            result = ProgressOutcome(
                order=order,
                result=outcome.result,
                errors=outcome.errors,
                token=context.issued_token,
            )
            if outcome.result.success:
                await self._after_save(result, context, now)
            return result

    async def _after_save(self, outcome: ProgressOutcome, context: CheckoutContext, now: datetime) -> None:
        order = outcome.order
        if self.intake is None:
            await self._run_accepted_actions(order, context, outcome.warnings, now)
            order.dates.email_sent = now
            await self.order_store.update(order)
            return

        try:
            response = await self.intake.submit(order)
        except IntakeError as e:
            logger.warning(f"Order {order.id} saved but intake failed: {e.message}")
            outcome.errors.order_errors.append(CheckoutIssue("Server", "bad response"))
            return

        if response.status != IntakeStatus.ACCEPTED:
            logger.info(f"Order {order.id} intake answered {response.status.value}")
            outcome.intake = response
            return

        merge_intake_response(order, response.order)
        order = calculate_prices(order, self.policy, CalculationMode.ALL)
        outcome.order = order
        await self._run_accepted_actions(order, context, outcome.warnings, now)
        advance_if_allowed(order, OrderStatus.SENT, now)
        order.dates.email_sent = now
        await self.order_store.update(order)

    async def _run_accepted_actions(
        self,
        order: Order,
        context: CheckoutContext,
        warnings: List[str],
        now: datetime,
    ) -> None:
        try:
            await self.cart_store.clear(context.cart_id)
        except Exception as e:
            logger.exception(f"Clearing cart {context.cart_id} failed")
            warnings.append(f"cart: {e}")

        linked = order.data.subscription is not None and bool(order.data.subscription.ids)
        if order.subscription_items() and not linked:
            try:
                await self.subscriptions.create_from_order(order, now)
            except Exception as e:
                logger.exception(f"Creating subscriptions for order {order.id} failed")
                warnings.append(f"subscriptions: {e}")

        try:
            await self.notifier.order_accepted(order)
        except Exception as e:
            logger.exception(f"Notification for order {order.id} failed")
            warnings.append(f"notify: {e}")

    def available_methods(self, order: Order) -> Dict[str, Any]:
        """Delivery and payment methods usable for the order's item mix."""
        subtypes = order.item_subtypes()
        return {
            "deliveries": [m.model_dump(mode="json") for m in self.policy.deliveries_for(subtypes)],
            "payments": [m.model_dump(mode="json") for m in self.policy.payments_for(subtypes)],
        }

    async def checkout_settings(self, context: CheckoutContext) -> Dict[str, Any]:
        order, _ = await self._working_order(context, utc_now())
        return self.available_methods(order)

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def _get_order(self, order_id: str) -> Order:
        order = await self.order_store.get(order_id)
        if order is None:
            raise OrderflowNotFoundError("Order", order_id)
        return order

    async def cancel(
        self,
        order_id: str,
        principal: Optional[SessionUser],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Cancel an order; owner or admin only.

        Raises:
            OrderflowAuthorizationError: caller is neither owner nor admin
            InvalidOrderTransition: order is already canceled
        """
        order = await self._get_order(order_id)
        if principal is None or (not principal.is_admin and principal.id != order.user.id):
            raise OrderflowAuthorizationError("Not allowed to cancel this order")

        transition(order, OrderStatus.CANCELED, now)
        order.data.canceled_user_id = principal.id
        await self.order_store.update(order)
        return {"success": True, "order": order}

    async def list_orders(
        self,
        principal: Optional[SessionUser],
        limit: int = 20,
        offset: int = 0,
    ) -> Dict[str, Any]:
        if principal is None:
            raise OrderflowAuthenticationError("Login required")
        total, orders = await self.order_store.list_by_user(principal.id, limit=limit, offset=offset)
        return {"total": total, "results": orders}

    async def clean_stale_carts(self, now: Optional[datetime] = None) -> List[str]:
        """Delete cart orders untouched for ``stale_cart_days``."""
        now = now or utc_now()
        cutoff = now - timedelta(days=self.stale_cart_days)
        removed = []
        for order in await self.order_store.list_stale_carts(cutoff):
            if await self.order_store.delete(order.id):
                removed.append(order.id)
        if removed:
            logger.info(f"Removed {len(removed)} stale cart orders")
        return removed

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def _return_urls(self, supplier: str, **params: str) -> ReturnUrls:
        query = urlencode(params)
        base = f"{self.public_base_url}/orders/payment/{supplier}"
        return ReturnUrls(success_url=f"{base}/success?{query}", cancel_url=f"{base}/cancel?{query}")

    def _check_payer(
        self,
        order: Order,
        principal: Optional[SessionUser],
        unverified_token: Optional[str],
    ) -> None:
        if principal is not None:
            if principal.is_admin or (order.user.id and principal.id == order.user.id):
                return
            raise OrderflowAuthorizationError("Not allowed to pay this order")
        identity = self.token_signer.read(unverified_token)
        if identity is None or not order.user.id or identity.user_id != order.user.id:
            raise OrderflowAuthorizationError("Not allowed to pay this order")

    async def payment(
        self,
        order_id: str,
        supplier: str,
        action: str,
        data: Optional[Dict[str, Any]] = None,
        principal: Optional[SessionUser] = None,
        unverified_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start a provider payment for a saved order.

        ``checkout`` creates a one-off charge for the outstanding amount;
        ``subscribe`` creates a recurring plan for one of the order's
        subscriptions (``data["subscription_id"]``).

        Logged-in callers must own the order (or be admin); anonymous callers
        must present the unverified-order token issued for the order's user.

        Raises:
            OrderflowAuthorizationError: caller may not pay this order
            OrderflowValidationError: unknown supplier/action or order not payable
            PaymentProviderError: the provider call failed
        """
        data = data or {}
        order = await self._get_order(order_id)
        self._check_payer(order, principal, unverified_token)
        try:
            provider = self.providers.get(supplier)
        except ProviderNotConfiguredError as e:
            raise OrderflowValidationError(e.message, field="supplier") from e
        if action not in PAYMENT_ACTIONS:
            raise OrderflowValidationError(f"Unknown payment action '{action}'", field="action")
        if order.status not in PAYABLE_STATUSES:
            raise OrderflowValidationError(f"Order is {order.status.value}, not ready for payment")

        with LogContext(order_id=order.id):
            if action == "checkout":
                if order.prices.price_total_to_pay <= ZERO:
                    raise OrderflowValidationError("Order has nothing left to pay")
                handle = await provider.create_charge(order, self._return_urls(supplier, order_id=order.id))
                order.data.payment_data.request_ids.append(handle.correlation_id)
                await self.order_store.update(order)
            else:
                subscription_id = data.get("subscription_id")
                subscription = await self.subscriptions.store.get(subscription_id) if subscription_id else None
                if subscription is None or subscription.order_origin_id != order.id:
                    raise OrderflowValidationError("Unknown subscription for this order", field="subscription_id")
                handle = await provider.create_plan(
                    subscription,
                    self._return_urls(supplier, order_id=order.id, subscription=subscription.id),
                )
                subscription.data.agreement.update({"request_id": handle.correlation_id, "supplier": supplier})
                await self.subscriptions.store.update(subscription)

        logger.info(f"Started {supplier} {action} for order {order.id}: {handle.correlation_id}")
        return {"success": True, "url": handle.url, "correlation_id": handle.correlation_id}

    async def payment_result(
        self,
        supplier: str,
        result: str,
        params: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Handle the customer's return from the provider approval page."""
        provider = self.providers.get(supplier)
        order_id = params.get("order_id") or ""
        thanks_url = f"{self.public_base_url}/checkout/result?{urlencode({'order_id': order_id})}"
        cancel_url = f"{self.public_base_url}/checkout/canceled?{urlencode({'order_id': order_id})}"

        if result == "cancel":
            logger.info(f"Customer canceled {supplier} payment for order {order_id}")
            return {"success": False, "redirect": cancel_url}

        event = await provider.execute(params)
        applied = await self.events.apply(event)
        success = event.kind != EventKind.IGNORED
        return {
            "success": success,
            "response": {
                "kind": event.kind.value,
                "correlation_id": event.correlation_id,
                "applied": applied,
            },
            "redirect": thanks_url if success else cancel_url,
        }
