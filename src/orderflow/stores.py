"""
Collaborator boundaries for persistence, carts, users and notifications.

Each boundary is an abstract base class with an in-memory implementation
used in development and tests. In-memory stores keep deep copies so callers
never share mutable state with the store.
"""
from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from orderflow.models import (
    Order,
    OrderItem,
    OrderStatus,
    OrderUser,
    Subscription,
    SubscriptionStatus,
    new_id,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Orders
# =============================================================================

class OrderStore(ABC):
    """Abstract interface for order storage."""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def insert(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def update(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def delete(self, order_id: str) -> bool:
        pass

    @abstractmethod
    async def find_by_payment_request(self, correlation_id: str) -> Optional[Order]:
        """Find the order whose payment request ids contain ``correlation_id``."""
        pass

    @abstractmethod
    async def list_by_user(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[int, List[Order]]:
        """Return (total, page) of a user's orders, newest first."""
        pass

    @abstractmethod
    async def list_stale_carts(self, changed_before: datetime) -> List[Order]:
        pass


class InMemoryOrderStore(OrderStore):
    """
    In-memory order store for development and testing.

    Note: This store is not suitable for production use.
    """

    def __init__(self):
        self._orders: Dict[str, Order] = {}

    async def get(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def insert(self, order: Order) -> Order:
        self._orders[order.id] = copy.deepcopy(order)
        return order

    async def update(self, order: Order) -> Order:
        self._orders[order.id] = copy.deepcopy(order)
        return order

    async def delete(self, order_id: str) -> bool:
        return self._orders.pop(order_id, None) is not None

    async def find_by_payment_request(self, correlation_id: str) -> Optional[Order]:
        for order in self._orders.values():
            if correlation_id in order.data.payment_data.request_ids:
                return copy.deepcopy(order)
        return None

    async def list_by_user(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[int, List[Order]]:
        owned = [o for o in self._orders.values() if o.user.id == user_id]
        owned.sort(
            key=lambda o: (o.dates.date_created is not None, o.dates.date_created),
            reverse=True,
        )
        page = owned[offset:offset + limit]
        return len(owned), [copy.deepcopy(o) for o in page]

    async def list_stale_carts(self, changed_before: datetime) -> List[Order]:
        stale = []
        for order in self._orders.values():
            if order.status != OrderStatus.CART:
                continue
            changed = order.dates.date_changed or order.dates.date_created
            if changed is not None and changed < changed_before:
                stale.append(copy.deepcopy(order))
        return stale


# =============================================================================
# Subscriptions
# =============================================================================

class SubscriptionStore(ABC):
    """Abstract interface for subscription storage."""

    @abstractmethod
    async def get(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def insert(self, subscription: Subscription) -> Subscription:
        pass

    @abstractmethod
    async def update(self, subscription: Subscription) -> Subscription:
        pass

    @abstractmethod
    async def find_by_agreement(self, agreement_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def find_by_request(self, request_id: str) -> Optional[Subscription]:
        """Find the subscription whose plan request id is ``request_id``."""
        pass

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[SubscriptionStatus]) -> List[Subscription]:
        pass


class InMemorySubscriptionStore(SubscriptionStore):
    """In-memory subscription store for development and testing."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        subscription = self._subscriptions.get(subscription_id)
        return copy.deepcopy(subscription) if subscription else None

    async def insert(self, subscription: Subscription) -> Subscription:
        self._subscriptions[subscription.id] = copy.deepcopy(subscription)
        return subscription

    async def update(self, subscription: Subscription) -> Subscription:
        self._subscriptions[subscription.id] = copy.deepcopy(subscription)
        return subscription

    async def find_by_agreement(self, agreement_id: str) -> Optional[Subscription]:
        for subscription in self._subscriptions.values():
            if subscription.agreement_id == agreement_id:
                return copy.deepcopy(subscription)
        return None

    async def find_by_request(self, request_id: str) -> Optional[Subscription]:
        for subscription in self._subscriptions.values():
            if subscription.data.agreement.get("request_id") == request_id:
                return copy.deepcopy(subscription)
        return None

    async def list_by_status(self, statuses: Iterable[SubscriptionStatus]) -> List[Subscription]:
        wanted = set(statuses)
        return [copy.deepcopy(s) for s in self._subscriptions.values() if s.status in wanted]


# =============================================================================
# Carts
# =============================================================================

@dataclass
class Cart:
    """Pre-checkout item container, owned by the storefront."""
    id: str = field(default_factory=lambda: new_id("cart"))
    items: List[Dict[str, Any]] = field(default_factory=list)
    order_id: Optional[str] = None

    def order_items(self) -> List[OrderItem]:
        return [OrderItem.from_dict(item) for item in self.items]


class CartStore(ABC):
    """Abstract interface for cart storage."""

    @abstractmethod
    async def get_or_create(self, cart_id: str) -> Cart:
        pass

    @abstractmethod
    async def save(self, cart: Cart) -> Cart:
        pass

    @abstractmethod
    async def clear(self, cart_id: str) -> None:
        """Drop the cart's items and its order binding."""
        pass


class InMemoryCartStore(CartStore):
    def __init__(self):
        self._carts: Dict[str, Cart] = {}

    async def get_or_create(self, cart_id: str) -> Cart:
        cart = self._carts.get(cart_id)
        if cart is None:
            cart = Cart(id=cart_id)
            self._carts[cart_id] = cart
        return copy.deepcopy(cart)

    async def save(self, cart: Cart) -> Cart:
        self._carts[cart.id] = copy.deepcopy(cart)
        return cart

    async def clear(self, cart_id: str) -> None:
        self._carts[cart_id] = Cart(id=cart_id)


# =============================================================================
# Users
# =============================================================================

class UserDirectory(ABC):
    """Account lookup and inline registration during checkout."""

    @abstractmethod
    async def email_exists(self, email: str) -> bool:
        pass

    @abstractmethod
    async def create_user(self, email: str, profile: Optional[Dict[str, Any]] = None) -> OrderUser:
        pass


class InMemoryUserDirectory(UserDirectory):
    def __init__(self):
        self._users: Dict[str, OrderUser] = {}

    async def email_exists(self, email: str) -> bool:
        return email.strip().lower() in self._users

    async def create_user(self, email: str, profile: Optional[Dict[str, Any]] = None) -> OrderUser:
        profile = profile or {}
        user = OrderUser(
            id=new_id("usr"),
            email=email.strip(),
            username=profile.get("username") or email.strip(),
        )
        self._users[email.strip().lower()] = user
        logger.info(f"Created user {user.id} during checkout")
        return user


# =============================================================================
# Notifications
# =============================================================================

class Notifier(ABC):
    """Customer-facing notifications (order accepted, order paid)."""

    @abstractmethod
    async def order_accepted(self, order: Order) -> None:
        pass

    @abstractmethod
    async def order_paid(self, order: Order) -> None:
        pass


class LoggingNotifier(Notifier):
    """Notifier that only logs; stands in where no mailer is wired."""

    async def order_accepted(self, order: Order) -> None:
        logger.info(f"Order {order.id} accepted, notifying {order.user.id}")

    async def order_paid(self, order: Order) -> None:
        logger.info(f"Order {order.id} paid, notifying {order.user.id}")
