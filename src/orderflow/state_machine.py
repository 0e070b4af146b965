"""Order status transitions.

Statuses are ranked; an order only ever moves to an equal or higher rank.
``canceled`` sits outside the ranking: any order that is not already
canceled may be canceled, and nothing leaves ``canceled``.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Union

from orderflow.exceptions import InvalidOrderTransition
from orderflow.models import Order, OrderStatus, utc_now

logger = logging.getLogger(__name__)


ORDER_STATUS_RANK = {
    OrderStatus.CART: 10,
    OrderStatus.SAVED: 20,
    OrderStatus.SENT: 30,
    OrderStatus.PAID: 40,
}

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELED})

StatusLike = Union[OrderStatus, str]


def _coerce(status: Optional[StatusLike]) -> Optional[OrderStatus]:
    if status is None or status == "":
        return None
    return status if isinstance(status, OrderStatus) else OrderStatus(status)


def apply_order_transition(
    current_status: Optional[StatusLike],
    incoming_status: Optional[StatusLike],
) -> tuple[Optional[OrderStatus], bool]:
    """
    Return (next_status, out_of_order).

    Out-of-order is raised when a lower-ranked status arrives after the order
    already advanced (e.g. an intake "sent" confirmation landing after the
    payment webhook marked the order paid). Terminal statuses absorb every
    incoming status.
    """
    current = _coerce(current_status)
    incoming = _coerce(incoming_status)
    if incoming is None:
        return current, False
    if current is None:
        return incoming, False
    if current in TERMINAL_STATUSES:
        return current, incoming != current
    if incoming == OrderStatus.CANCELED:
        return incoming, False
    if ORDER_STATUS_RANK[incoming] < ORDER_STATUS_RANK[current]:
        return current, True
    return incoming, False


def can_transition(current: StatusLike, target: StatusLike) -> bool:
    next_status, out_of_order = apply_order_transition(current, target)
    return not out_of_order and next_status == _coerce(target)


def transition(order: Order, target: StatusLike, now: Optional[datetime] = None) -> Order:
    """Move ``order`` to ``target`` in place, stamping the matching date.

    Raises:
        InvalidOrderTransition: the move would regress or leave ``canceled``
    """
    target_status = _coerce(target)
    current = order.status
    if current in TERMINAL_STATUSES or not can_transition(current, target_status):
        raise InvalidOrderTransition(current.value, target_status.value)
    if current == target_status:
        return order

    now = now or utc_now()
    order.status = target_status
    order.dates.date_changed = now
    if target_status == OrderStatus.SENT:
        order.dates.date_sent = now
    elif target_status == OrderStatus.PAID:
        order.dates.date_paid = now
    elif target_status == OrderStatus.CANCELED:
        order.dates.date_canceled = now
    logger.info(f"Order {order.id} status {current.value} -> {target_status.value}")
    return order


def advance_if_allowed(order: Order, target: StatusLike, now: Optional[datetime] = None) -> bool:
    """Forward-only transition that ignores stale or out-of-order targets.

    Returns:
        True if the status changed
    """
    target_status = _coerce(target)
    if order.status == target_status or not can_transition(order.status, target_status):
        if order.status != target_status:
            logger.info(
                f"Ignoring out-of-order status {target_status.value} for order "
                f"{order.id} (currently {order.status.value})"
            )
        return False
    transition(order, target_status, now)
    return True
