"""Billing date arithmetic for subscriptions."""
from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Union

from orderflow.models import BillingPeriod

MAX_CYCLES = 1000

PeriodLike = Union[BillingPeriod, str]


def _add_months(date: datetime, months: int) -> datetime:
    month = date.month - 1 + months
    year = date.year + month // 12
    month = month % 12 + 1
    # clamp to the last day of the target month (Jan 31 + 1 month -> Feb 28/29)
    day = min(date.day, calendar.monthrange(year, month)[1])
    return date.replace(year=year, month=month, day=day)


def calculate_date_order_next(period: PeriodLike, duration: int, date: datetime) -> datetime:
    """Advance ``date`` by ``duration`` billing periods."""
    period = BillingPeriod(period)
    duration = int(duration)
    if period == BillingPeriod.DAY:
        return date + timedelta(days=duration)
    if period == BillingPeriod.WEEK:
        return date + timedelta(weeks=duration)
    if period == BillingPeriod.MONTH:
        return _add_months(date, duration)
    return _add_months(date, 12 * duration)


def calculate_date_end(start: datetime, period: PeriodLike, duration: int, cycles: int) -> datetime:
    """Date after the last billing cycle.

    Subscriptions without a cycle limit (or with more than ``MAX_CYCLES``)
    run for a thousand years.
    """
    if cycles <= 0 or cycles > MAX_CYCLES:
        return _add_months(start, 12 * MAX_CYCLES)
    end = start
    for _ in range(cycles):
        end = calculate_date_order_next(period, duration, end)
    return end
