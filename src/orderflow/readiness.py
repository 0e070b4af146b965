"""
Checkout readiness pipeline.

Every progress call runs the same ordered checks against the working order:

    0. items          - the order has at least one line item
    1. user           - an identified user and a complete invoice address
    2. order options  - known delivery/payment methods covering all items
    3. confirmation   - the customer confirmed the order in the past

The pipeline stops at the first failing check. Its result id tells the
checkout wizard which step to show next; the collected issues explain why.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from orderflow.context import CheckoutContext
from orderflow.models import Order, OrderUser, utc_now
from orderflow.policy import PricePolicy
from orderflow.pricing import CalculationMode, calculate_prices, quote_delivery
from orderflow.tokens import OrderTokenSigner

logger = logging.getLogger(__name__)


INVOICE_REQUIRED_FIELDS = (
    "email",
    "phone",
    "name_first",
    "name_last",
    "street",
    "zip",
    "city",
    "country",
)


@dataclass(frozen=True)
class ReadinessResult:
    id: int
    name: str
    success: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "success": self.success}


MISSING_ITEMS = ReadinessResult(0, "missing cart items", False)
MISSING_USER = ReadinessResult(1, "missing user data", False)
MISSING_ORDER_DATA = ReadinessResult(2, "missing order data", False)
MISSING_CONFIRMATION = ReadinessResult(3, "missing confirmation", False)
CONFIRMED = ReadinessResult(4, "confirmed", True)


@dataclass(frozen=True)
class CheckoutIssue:
    value: str
    desc: str

    def to_dict(self) -> Dict[str, str]:
        return {"value": self.value, "desc": self.desc}


@dataclass
class CheckoutErrors:
    item_errors: List[CheckoutIssue] = field(default_factory=list)
    user_errors: List[CheckoutIssue] = field(default_factory=list)
    order_errors: List[CheckoutIssue] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.item_errors or self.user_errors or self.order_errors)

    def to_dict(self) -> Dict[str, List[Dict[str, str]]]:
        return {
            "item_errors": [i.to_dict() for i in self.item_errors],
            "user_errors": [i.to_dict() for i in self.user_errors],
            "order_errors": [i.to_dict() for i in self.order_errors],
        }


@dataclass
class ReadinessOutcome:
    order: Order
    result: ReadinessResult
    errors: CheckoutErrors


def split_name(address: Dict[str, Any]) -> None:
    """Fill first/last name from a single free-form ``name`` field."""
    name = address.get("name")
    if not isinstance(name, str) or not name.strip():
        return
    parts = name.split()
    address["name_first"] = parts[0]
    if len(parts) > 1:
        address["name_last"] = parts[-1]


class ReadinessPipeline:
    """Runs the readiness checks for one working order."""

    def __init__(
        self,
        policy: PricePolicy,
        token_signer: OrderTokenSigner,
    ):
        self.policy = policy
        self.token_signer = token_signer

    def evaluate(
        self,
        order: Order,
        context: CheckoutContext,
        errors: Optional[CheckoutErrors] = None,
        now: Optional[datetime] = None,
    ) -> ReadinessOutcome:
        """Recompute prices, then run the checks until the first failure."""
        now = now or utc_now()
        errors = errors if errors is not None else CheckoutErrors()
        order = calculate_prices(order, self.policy, CalculationMode.ALL)

        if not self.check_items(order, errors):
            result = MISSING_ITEMS
        elif not self.check_user(order, context, errors, now):
            result = MISSING_USER
        elif not self.check_order_options(order, errors):
            result = MISSING_ORDER_DATA
        elif not self.check_confirmation(order, errors, now):
            result = MISSING_CONFIRMATION
        else:
            result = CONFIRMED

        logger.info(f"Order {order.id} readiness: {result.id} ({result.name})")
        return ReadinessOutcome(order=order, result=result, errors=errors)

    def check_items(self, order: Order, errors: CheckoutErrors) -> bool:
        if not order.items:
            errors.item_errors.append(CheckoutIssue("Cart items", "no items"))
            return False
        return True

    def resolve_user(
        self,
        order: Order,
        context: CheckoutContext,
        now: datetime,
    ) -> Optional[OrderUser]:
        """Pick the acting identity.

        Precedence: authenticated session user, user created inline in this
        checkout, unverified-order token, order user who has since logged out
        (cleared), and finally the user already stored on the order.
        """
        session = context.session_user
        if session and session.id:
            return OrderUser(
                id=session.id,
                external_id=session.external_id,
                username=session.username,
                email=session.email,
            )

        if context.user_new and order.user.id:
            if order.user.is_identified:
                context.issued_token = self.token_signer.issue(order.user, now)
            return order.user

        identity = self.token_signer.read(context.unverified_token)
        if identity is not None:
            user = OrderUser(id=identity.user_id, email=identity.email)
            context.issued_token = self.token_signer.issue(user, now)
            return user

        if order.user.id:
            logger.info(f"Order {order.id} user logged out, clearing order user")
            order.addresses.invoice_address = None
            return OrderUser()

        if order.user.email or order.user.username:
            return order.user
        return None

    def check_user(
        self,
        order: Order,
        context: CheckoutContext,
        errors: CheckoutErrors,
        now: datetime,
    ) -> bool:
        user = self.resolve_user(order, context, now)
        if user is None:
            errors.user_errors.append(CheckoutIssue("User", "not set"))
            return False
        order.user = user
        if not user.is_identified:
            errors.user_errors.append(CheckoutIssue("User", "missing id or email"))
            return False

        required = list(INVOICE_REQUIRED_FIELDS)
        if context.is_authenticated:
            required.remove("email")

        invoice = order.addresses.invoice_address
        if not invoice:
            stored = context.session_user.address("invoice") if context.session_user else None
            if not stored:
                errors.user_errors.append(CheckoutIssue("Invoice address", "not set"))
                return False
            invoice = stored
            order.addresses.invoice_address = invoice

        split_name(invoice)
        for name in required:
            value = invoice.get(name)
            if value is None or str(value).strip() == "":
                errors.user_errors.append(CheckoutIssue(f"Invoice address value '{name}'", "not found"))

        return not errors.user_errors

    def check_order_options(self, order: Order, errors: CheckoutErrors) -> bool:
        subtypes = order.item_subtypes()
        codenames = [c for c in order.data.delivery_data.codename.values() if c]
        if not codenames:
            errors.order_errors.append(CheckoutIssue("Delivery type", "not set"))
        else:
            quote = quote_delivery(order, self.policy)
            if quote.unknown_codenames:
                errors.order_errors.append(CheckoutIssue("Delivery type", "not found"))
            if quote.mismatched_codenames:
                errors.order_errors.append(CheckoutIssue("Delivery type", "not valid"))
            for subtype in subtypes:
                if subtype not in quote.covered_subtypes:
                    errors.order_errors.append(CheckoutIssue(f"Delivery type '{subtype}'", "not found"))

        codename = order.data.payment_data.codename
        if not codename:
            errors.order_errors.append(CheckoutIssue("Payment type", "not set"))
        else:
            method = self.policy.payment_method(codename)
            if method is None:
                errors.order_errors.append(CheckoutIssue("Payment type", "not found"))
            elif (
                method.restricted_subtype
                and len(subtypes) > 1
                and method.restricted_subtype in subtypes
            ):
                errors.order_errors.append(CheckoutIssue("Payment type", "not valid"))

        return not errors.order_errors

    def check_confirmation(self, order: Order, errors: CheckoutErrors, now: datetime) -> bool:
        confirmed_at = order.dates.user_confirmation
        if confirmed_at is not None and confirmed_at < now:
            return True
        errors.order_errors.append(CheckoutIssue("Confirmation", "missing"))
        return False
