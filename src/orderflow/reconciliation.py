"""
Reconciliation of external responses into local orders.

Two sources feed back into an order after it leaves the checkout:

- the order-intake service, whose confirmation is merged conservatively
  (``merge_intake_response``)
- payment providers, whose responses are appended to the order's payment log
  and from which the paid amount is always recomputed

Recomputing from the full log keeps replayed or reordered webhooks harmless.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from orderflow.models import (
    Order,
    OrderStatus,
    PaymentRecord,
    ResponseAction,
    ZERO,
    to_decimal,
    utc_now,
)
from orderflow.pricing import round_price
from orderflow.state_machine import advance_if_allowed

logger = logging.getLogger(__name__)


def _non_blank(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def merge_intake_response(order: Order, response_order: Optional[Dict[str, Any]]) -> Order:
    """Merge an intake confirmation into ``order`` in place.

    Only non-blank external identifiers are taken over. Item amounts change
    only when both item lists line up id by id and the local item carries a
    ``response_action`` verdict; everything else stays as computed locally.
    """
    if not response_order:
        return order

    for key in ("external_id", "external_code"):
        value = response_order.get(key)
        if _non_blank(value):
            setattr(order, key, str(value))

    response_items = response_order.get("items")
    if not isinstance(response_items, list) or len(response_items) != len(order.items):
        return order

    for local, remote in zip(order.items, response_items):
        if not isinstance(remote, dict) or str(remote.get("id")) != str(local.id):
            logger.info(f"Order {order.id} intake items differ from local items, amounts kept")
            return order

    for local, remote in zip(order.items, response_items):
        if local.response_action is None or remote.get("amount") is None:
            continue
        if local.response_action == ResponseAction.UPDATED:
            local.amount = int(remote["amount"])
        elif local.response_action == ResponseAction.REJECTED:
            local.amount = 0
    return order


def record_provider_response(history: List[PaymentRecord], record: PaymentRecord) -> bool:
    """Append ``record`` unless its event id is already logged.

    Returns:
        True if the record was appended
    """
    if any(existing.event_id == record.event_id for existing in history):
        return False
    history.append(record)
    return True


def paid_amount_to_date(history: Iterable[PaymentRecord]) -> Decimal:
    """Sum of successful payments, counting each event id once."""
    seen = set()
    total = ZERO
    for record in history:
        if record.event_id in seen:
            continue
        seen.add(record.event_id)
        if record.succeeded:
            total += to_decimal(record.amount)
    return total


def apply_order_payment(order: Order, record: PaymentRecord, now: Optional[datetime] = None) -> bool:
    """Log a provider response on ``order`` and recompute what is paid.

    The order moves to ``paid`` once the paid amount covers the total;
    canceled orders only get the record logged.

    Returns:
        True if the record was new
    """
    now = now or utc_now()
    payment = order.data.payment_data
    appended = record_provider_response(payment.history, record)
    if not appended:
        logger.info(f"Duplicate payment event {record.event_id} for order {order.id}")

    paid = paid_amount_to_date(payment.history)
    payment.paid_amount_total = round_price(paid)
    order.prices.price_total_to_pay = round_price(order.prices.price_total - paid)
    if appended:
        payment.last_date = now

    if order.status != OrderStatus.CANCELED and paid > ZERO and paid >= order.prices.price_total:
        advance_if_allowed(order, OrderStatus.PAID, now)
    return appended
