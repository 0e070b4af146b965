"""Order and subscription data models.

Domain records are dataclasses. Each top-level record converts to and from a
plain document (``to_dict`` / ``from_dict``) at the persistence boundary;
API-facing shapes live in ``orderflow.api`` as pydantic models.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional


ZERO = Decimal("0")


class OrderStatus(str, Enum):
    """Order lifecycle status."""
    CART = "cart"
    SAVED = "saved"
    SENT = "sent"
    PAID = "paid"
    CANCELED = "canceled"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    INACTIVE = "inactive"
    AGREED = "agreed"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    STOPPED = "stopped"
    FINISHED = "finished"


class BillingPeriod(str, Enum):
    """Unit a subscription advances by on each billing cycle."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class ItemType(str, Enum):
    PRODUCT = "product"
    SUBSCRIPTION = "subscription"


class ItemSubtype(str, Enum):
    PHYSICAL = "physical"
    DIGITAL = "digital"


class ResponseAction(str, Enum):
    """Per-item verdict an order-intake service may attach to a line item."""
    UPDATED = "updated"
    REJECTED = "rejected"


class TaxRegime(str, Enum):
    # prices already contain tax (VAT style)
    INCLUSIVE = "inclusive"
    # tax is added on top of net prices
    EXCLUSIVE = "exclusive"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def to_decimal(value: Any, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    """Coerce numbers and numeric strings to Decimal without float noise."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse datetimes, ISO strings and epoch seconds/milliseconds into aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        raw = float(value)
        if raw > 1e12:
            raw = raw / 1000.0
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.isdigit():
            return parse_timestamp(int(s))
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(s)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


# =============================================================================
# Order
# =============================================================================

@dataclass
class TaxData:
    """Tax breakdown of a single unit price."""
    tax_rate: Decimal
    tax: Decimal
    price_with_tax: Decimal
    price_without_tax: Decimal
    regime: TaxRegime = TaxRegime.INCLUSIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tax_rate": self.tax_rate,
            "tax": self.tax,
            "price_with_tax": self.price_with_tax,
            "price_without_tax": self.price_without_tax,
            "regime": self.regime.value,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TaxData"]:
        if not data:
            return None
        return cls(
            tax_rate=to_decimal(data.get("tax_rate")),
            tax=to_decimal(data.get("tax")),
            price_with_tax=to_decimal(data.get("price_with_tax")),
            price_without_tax=to_decimal(data.get("price_without_tax")),
            regime=TaxRegime(data.get("regime") or TaxRegime.INCLUSIVE.value),
        )


@dataclass
class SubscriptionPolicy:
    """Recurring-billing terms attached to a subscription-type product."""
    period: BillingPeriod = BillingPeriod.MONTH
    duration: int = 1
    cycles: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"period": self.period.value, "duration": self.duration, "cycles": self.cycles}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SubscriptionPolicy"]:
        if not data:
            return None
        return cls(
            period=BillingPeriod(data.get("period") or BillingPeriod.MONTH.value),
            duration=int(data.get("duration") or 1),
            cycles=int(data.get("cycles") or 0),
        )


@dataclass
class OrderItem:
    """A priced line item copied from the cart."""
    id: str
    name: str = ""
    amount: int = 1
    price: Decimal = ZERO
    tax: Optional[Decimal] = None
    type: ItemType = ItemType.PRODUCT
    subtype: str = ItemSubtype.PHYSICAL.value
    tax_data: Optional[TaxData] = None
    response_action: Optional[ResponseAction] = None
    subscription: Optional[SubscriptionPolicy] = None
    subscription_id: Optional[str] = None
    paid: bool = False

    @property
    def is_subscription(self) -> bool:
        return self.type == ItemType.SUBSCRIPTION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "amount": self.amount,
            "price": self.price,
            "tax": self.tax,
            "type": self.type.value,
            "subtype": self.subtype,
            "tax_data": self.tax_data.to_dict() if self.tax_data else None,
            "response_action": self.response_action.value if self.response_action else None,
            "subscription": self.subscription.to_dict() if self.subscription else None,
            "subscription_id": self.subscription_id,
            "paid": self.paid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderItem":
        action = data.get("response_action")
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name") or "",
            amount=int(data.get("amount") or 0),
            price=to_decimal(data.get("price")),
            tax=to_decimal(data.get("tax"), default=None),
            type=ItemType(data.get("type") or ItemType.PRODUCT.value),
            subtype=data.get("subtype") or ItemSubtype.PHYSICAL.value,
            tax_data=TaxData.from_dict(data.get("tax_data")),
            response_action=ResponseAction(action) if action in ("updated", "rejected") else None,
            subscription=SubscriptionPolicy.from_dict(data.get("subscription")),
            subscription_id=data.get("subscription_id"),
            paid=bool(data.get("paid", False)),
        )


@dataclass
class OrderUser:
    id: Optional[str] = None
    external_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    token: Optional[str] = None

    @property
    def is_identified(self) -> bool:
        return bool(self.id and self.email)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "username": self.username,
            "email": self.email,
            "token": self.token,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OrderUser":
        data = data or {}
        return cls(
            id=data.get("id"),
            external_id=data.get("external_id"),
            username=data.get("username"),
            email=data.get("email"),
            token=data.get("token"),
        )


@dataclass
class OrderDates:
    date_created: Optional[datetime] = None
    date_changed: Optional[datetime] = None
    date_sent: Optional[datetime] = None
    date_paid: Optional[datetime] = None
    date_canceled: Optional[datetime] = None
    user_confirmation: Optional[datetime] = None
    email_sent: Optional[datetime] = None

    _FIELDS = (
        "date_created",
        "date_changed",
        "date_sent",
        "date_paid",
        "date_canceled",
        "user_confirmation",
        "email_sent",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self._FIELDS}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OrderDates":
        data = data or {}
        return cls(**{name: parse_timestamp(data.get(name)) for name in cls._FIELDS})


@dataclass
class OrderAddresses:
    invoice_address: Optional[Dict[str, Any]] = None
    delivery_address: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_address": dict(self.invoice_address) if self.invoice_address is not None else None,
            "delivery_address": dict(self.delivery_address) if self.delivery_address is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OrderAddresses":
        data = data or {}
        invoice = data.get("invoice_address")
        delivery = data.get("delivery_address")
        return cls(
            invoice_address=dict(invoice) if isinstance(invoice, dict) else None,
            delivery_address=dict(delivery) if isinstance(delivery, dict) else None,
        )


@dataclass
class OrderPrices:
    """Computed price breakdown. Only the pricing engine writes these."""
    currency: str = "EUR"
    price_items: Decimal = ZERO
    price_items_no_tax: Decimal = ZERO
    price_tax_total: Decimal = ZERO
    price_delivery: Decimal = ZERO
    price_payment: Decimal = ZERO
    price_total: Decimal = ZERO
    price_total_no_tax: Decimal = ZERO
    price_total_to_pay: Decimal = ZERO
    delivery_tax_data: Optional[TaxData] = None
    payment_tax_data: Optional[TaxData] = None

    _AMOUNTS = (
        "price_items",
        "price_items_no_tax",
        "price_tax_total",
        "price_delivery",
        "price_payment",
        "price_total",
        "price_total_no_tax",
        "price_total_to_pay",
    )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"currency": self.currency}
        result.update({name: getattr(self, name) for name in self._AMOUNTS})
        result["delivery_tax_data"] = self.delivery_tax_data.to_dict() if self.delivery_tax_data else None
        result["payment_tax_data"] = self.payment_tax_data.to_dict() if self.payment_tax_data else None
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OrderPrices":
        data = data or {}
        return cls(
            currency=data.get("currency") or "EUR",
            delivery_tax_data=TaxData.from_dict(data.get("delivery_tax_data")),
            payment_tax_data=TaxData.from_dict(data.get("payment_tax_data")),
            **{name: to_decimal(data.get(name)) for name in cls._AMOUNTS},
        )


@dataclass
class PaymentRecord:
    """One normalized provider response kept in an append-only payment log."""
    event_id: str
    supplier: str
    status: str
    succeeded: bool
    amount: Decimal = ZERO
    currency: Optional[str] = None
    received_at: datetime = field(default_factory=utc_now)
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "supplier": self.supplier,
            "status": self.status,
            "succeeded": self.succeeded,
            "amount": self.amount,
            "currency": self.currency,
            "received_at": self.received_at,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            event_id=str(data.get("event_id", "")),
            supplier=str(data.get("supplier", "")),
            status=str(data.get("status", "")),
            succeeded=bool(data.get("succeeded", False)),
            amount=to_decimal(data.get("amount")),
            currency=data.get("currency"),
            received_at=parse_timestamp(data.get("received_at")) or utc_now(),
            raw=dict(data.get("raw") or {}),
        )


@dataclass
class DeliveryData:
    # subtype -> chosen delivery method codename
    codename: Dict[str, Optional[str]] = field(default_factory=dict)
    # subtype -> resolved delivery fee
    prices: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"codename": dict(self.codename), "prices": dict(self.prices)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeliveryData":
        data = data or {}
        codename = data.get("codename") or {}
        if isinstance(codename, str):
            codename = {ItemSubtype.PHYSICAL.value: codename}
        normalized: Dict[str, Optional[str]] = {}
        for subtype, value in codename.items():
            # accept {"value": "courier"} as sent by older checkout clients
            if isinstance(value, dict):
                value = value.get("value")
            normalized[subtype] = value
        prices = {k: to_decimal(v) for k, v in (data.get("prices") or {}).items()}
        return cls(codename=normalized, prices=prices)


@dataclass
class PaymentData:
    codename: Optional[str] = None
    name: Dict[str, str] = field(default_factory=dict)
    price: Decimal = ZERO
    # provider correlation ids captured when a charge was created
    request_ids: List[str] = field(default_factory=list)
    history: List[PaymentRecord] = field(default_factory=list)
    paid_amount_total: Decimal = ZERO
    last_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "codename": self.codename,
            "name": dict(self.name),
            "price": self.price,
            "request_ids": list(self.request_ids),
            "history": [record.to_dict() for record in self.history],
            "paid_amount_total": self.paid_amount_total,
            "last_date": self.last_date,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PaymentData":
        data = data or {}
        return cls(
            codename=data.get("codename"),
            name=dict(data.get("name") or {}),
            price=to_decimal(data.get("price")),
            request_ids=list(data.get("request_ids") or []),
            history=[PaymentRecord.from_dict(r) for r in data.get("history") or []],
            paid_amount_total=to_decimal(data.get("paid_amount_total")),
            last_date=parse_timestamp(data.get("last_date")),
        )


@dataclass
class OrderSubscriptionLink:
    """Links an order to the subscriptions it spawned."""
    created: Optional[datetime] = None
    ids: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"created": self.created, "ids": [dict(i) for i in self.ids]}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["OrderSubscriptionLink"]:
        if not data:
            return None
        return cls(
            created=parse_timestamp(data.get("created")),
            ids=[dict(i) for i in data.get("ids") or []],
        )


@dataclass
class OrderData:
    delivery_data: DeliveryData = field(default_factory=DeliveryData)
    payment_data: PaymentData = field(default_factory=PaymentData)
    coupon_data: Optional[Dict[str, Any]] = None
    subscription: Optional[OrderSubscriptionLink] = None
    canceled_user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivery_data": self.delivery_data.to_dict(),
            "payment_data": self.payment_data.to_dict(),
            "coupon_data": dict(self.coupon_data) if self.coupon_data else None,
            "subscription": self.subscription.to_dict() if self.subscription else None,
            "canceled_user_id": self.canceled_user_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OrderData":
        data = data or {}
        return cls(
            delivery_data=DeliveryData.from_dict(data.get("delivery_data")),
            payment_data=PaymentData.from_dict(data.get("payment_data")),
            coupon_data=data.get("coupon_data"),
            subscription=OrderSubscriptionLink.from_dict(data.get("subscription")),
            canceled_user_id=data.get("canceled_user_id"),
        )


@dataclass
class Order:
    """A customer's checkout transaction."""
    id: str = field(default_factory=lambda: new_id("ord"))
    status: OrderStatus = OrderStatus.CART
    external_id: Optional[str] = None
    external_code: Optional[str] = None
    user: OrderUser = field(default_factory=OrderUser)
    ip: Optional[str] = None
    lang: str = "en"
    country: Optional[str] = None
    dates: OrderDates = field(default_factory=OrderDates)
    addresses: OrderAddresses = field(default_factory=OrderAddresses)
    prices: OrderPrices = field(default_factory=OrderPrices)
    items: List[OrderItem] = field(default_factory=list)
    data: OrderData = field(default_factory=OrderData)
    notes: Optional[str] = None

    def item_subtypes(self) -> List[str]:
        """Distinct item subtypes in order of first appearance."""
        subtypes: List[str] = []
        for item in self.items:
            if item.subtype and item.subtype not in subtypes:
                subtypes.append(item.subtype)
        return subtypes

    def count_item_types(self) -> Dict[str, int]:
        """Number of line items per item type."""
        counts: Dict[str, int] = {}
        for item in self.items:
            counts[item.type.value] = counts.get(item.type.value, 0) + 1
        return counts

    def subscription_items(self) -> List[OrderItem]:
        return [item for item in self.items if item.is_subscription]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "external_id": self.external_id,
            "external_code": self.external_code,
            "user": self.user.to_dict(),
            "ip": self.ip,
            "lang": self.lang,
            "country": self.country,
            "dates": self.dates.to_dict(),
            "addresses": self.addresses.to_dict(),
            "prices": self.prices.to_dict(),
            "items": [item.to_dict() for item in self.items],
            "data": self.data.to_dict(),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            id=str(data.get("id") or new_id("ord")),
            status=OrderStatus(data.get("status") or OrderStatus.CART.value),
            external_id=data.get("external_id"),
            external_code=data.get("external_code"),
            user=OrderUser.from_dict(data.get("user")),
            ip=data.get("ip"),
            lang=data.get("lang") or "en",
            country=data.get("country"),
            dates=OrderDates.from_dict(data.get("dates")),
            addresses=OrderAddresses.from_dict(data.get("addresses")),
            prices=OrderPrices.from_dict(data.get("prices")),
            items=[OrderItem.from_dict(item) for item in data.get("items") or []],
            data=OrderData.from_dict(data.get("data")),
            notes=data.get("notes"),
        )


# =============================================================================
# Subscription
# =============================================================================

@dataclass
class HistoryRecord:
    """One entry of a subscription's append-only lifecycle log."""
    action: str
    type: str
    date: datetime = field(default_factory=utc_now)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "type": self.type, "date": self.date, "data": self.data}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            action=str(data.get("action", "")),
            type=str(data.get("type", "")),
            date=parse_timestamp(data.get("date")) or utc_now(),
            data=dict(data.get("data") or {}),
        )


@dataclass
class SubscriptionDates:
    date_start: Optional[datetime] = None
    date_order_next: Optional[datetime] = None
    date_end: Optional[datetime] = None
    date_created: Optional[datetime] = None
    date_updated: Optional[datetime] = None
    date_stopped: Optional[datetime] = None

    _FIELDS = (
        "date_start",
        "date_order_next",
        "date_end",
        "date_created",
        "date_updated",
        "date_stopped",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self._FIELDS}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SubscriptionDates":
        data = data or {}
        return cls(**{name: parse_timestamp(data.get(name)) for name in cls._FIELDS})


@dataclass
class SubscriptionData:
    product: Dict[str, Any] = field(default_factory=dict)
    # sanitized template order document cloned for each renewal
    order: Dict[str, Any] = field(default_factory=dict)
    # provider-side agreement: id, supplier, request_id
    agreement: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"product": self.product, "order": self.order, "agreement": self.agreement}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SubscriptionData":
        data = data or {}
        return cls(
            product=dict(data.get("product") or {}),
            order=dict(data.get("order") or {}),
            agreement=dict(data.get("agreement") or {}),
        )


@dataclass
class Subscription:
    """A recurring-billing record spawned from a subscription-type order item."""
    id: str = field(default_factory=lambda: new_id("sub"))
    user_id: Optional[str] = None
    order_origin_id: Optional[str] = None
    order_item_name: str = ""
    type: str = "autorefresh"
    period: BillingPeriod = BillingPeriod.MONTH
    duration: int = 1
    cycles: int = 0
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    dates: SubscriptionDates = field(default_factory=SubscriptionDates)
    price: Decimal = ZERO
    data: SubscriptionData = field(default_factory=SubscriptionData)
    history: List[HistoryRecord] = field(default_factory=list)

    @property
    def agreement_id(self) -> Optional[str]:
        return self.data.agreement.get("id")

    @property
    def supplier(self) -> Optional[str]:
        return self.data.agreement.get("supplier")

    def add_history(
        self,
        action: str,
        type: str,
        data: Optional[Dict[str, Any]] = None,
        date: Optional[datetime] = None,
    ) -> HistoryRecord:
        record = HistoryRecord(action=action, type=type, date=date or utc_now(), data=data or {})
        self.history.append(record)
        return record

    def payment_records(self) -> List[HistoryRecord]:
        return [h for h in self.history if h.action == "payment"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_origin_id": self.order_origin_id,
            "order_item_name": self.order_item_name,
            "type": self.type,
            "period": self.period.value,
            "duration": self.duration,
            "cycles": self.cycles,
            "status": self.status.value,
            "dates": self.dates.to_dict(),
            "price": self.price,
            "data": self.data.to_dict(),
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscription":
        return cls(
            id=str(data.get("id") or new_id("sub")),
            user_id=data.get("user_id"),
            order_origin_id=data.get("order_origin_id"),
            order_item_name=data.get("order_item_name") or "",
            type=data.get("type") or "autorefresh",
            period=BillingPeriod(data.get("period") or BillingPeriod.MONTH.value),
            duration=int(data.get("duration") or 1),
            cycles=int(data.get("cycles") or 0),
            status=SubscriptionStatus(data.get("status") or SubscriptionStatus.INACTIVE.value),
            dates=SubscriptionDates.from_dict(data.get("dates")),
            price=to_decimal(data.get("price")),
            data=SubscriptionData.from_dict(data.get("data")),
            history=[HistoryRecord.from_dict(h) for h in data.get("history") or []],
        )
