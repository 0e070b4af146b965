"""Base payment provider interface."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from orderflow.models import Order, PaymentRecord, Subscription


class EventKind(str, Enum):
    """Normalized provider event kinds the webhook router dispatches on."""
    ORDER_PAYMENT_COMPLETED = "order_payment_completed"
    SUBSCRIPTION_PAYMENT_COMPLETED = "subscription_payment_completed"
    SUBSCRIPTION_AGREED = "subscription_agreed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    IGNORED = "ignored"


@dataclass
class ProviderEvent:
    """A provider notification or redirect confirmation, normalized.

    ``correlation_id`` is the id captured when the charge or plan was created
    (stored in ``request_ids`` / ``agreement.request_id``); ``agreement_id``
    identifies the provider-side recurring agreement once it exists.
    """
    kind: EventKind
    supplier: str
    event_type: str = ""
    correlation_id: Optional[str] = None
    agreement_id: Optional[str] = None
    record: Optional[PaymentRecord] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReturnUrls:
    success_url: str
    cancel_url: str


@dataclass
class ChargeHandle:
    """Where to send the customer to approve a charge or plan."""
    url: Optional[str]
    correlation_id: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResult:
    success: bool
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to cents."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Any) -> Decimal:
    return (Decimal(str(amount or 0)) / 100).quantize(Decimal("0.01"))


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class PaymentProvider(ABC):
    """Abstract interface for payment providers."""

    @property
    @abstractmethod
    def supplier(self) -> str:
        """Registry key, also stored on payment records and agreements."""
        pass

    @abstractmethod
    async def create_charge(self, order: Order, urls: ReturnUrls) -> ChargeHandle:
        """
        Create a one-off charge for the order's outstanding amount.

        Raises:
            PaymentProviderError: the provider rejected or could not be reached
        """
        pass

    @abstractmethod
    async def create_plan(self, subscription: Subscription, urls: ReturnUrls) -> ChargeHandle:
        """
        Create a recurring plan/agreement for a subscription.

        Raises:
            PaymentProviderError: the provider rejected or could not be reached
        """
        pass

    @abstractmethod
    async def execute(self, params: Dict[str, Any]) -> ProviderEvent:
        """
        Confirm a charge or agreement after the customer returns from the
        provider's approval page.

        Args:
            params: Query parameters of the return redirect
        """
        pass

    @abstractmethod
    async def suspend(self, agreement_id: str, reason: str) -> ProviderResult:
        pass

    @abstractmethod
    async def reactivate(self, agreement_id: str, reason: str) -> ProviderResult:
        pass

    @abstractmethod
    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> None:
        """
        Verify a webhook delivery.

        Raises:
            WebhookSignatureError: the delivery is not authentic
        """
        pass

    @abstractmethod
    def parse_event(self, payload: bytes) -> ProviderEvent:
        pass

    def acknowledge(self) -> Dict[str, Any]:
        """Response body the provider expects for an accepted delivery."""
        return {"received": True}

    async def close(self) -> None:
        pass
