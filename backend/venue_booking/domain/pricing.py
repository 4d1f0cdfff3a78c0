"""Pricing of a court reservation.

Each slot of the interval is priced on its own: the peak rate wins when the
slot starts inside the peak window, then the weekend rate when the slot falls
on a weekend day, then the base hourly rate. The total is the sum of
``rate * slot hours`` rounded to cents, so identical inputs always produce an
identical amount.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Tuple

from .entities import RateTable
from .errors import InvalidRangeError
from .slots import to_minutes

CENTS = Decimal("0.01")
DEFAULT_DURATIONS = (30, 60, 90, 120, 150, 180)


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _in_peak_window(rate_table: RateTable, slot_start: datetime) -> bool:
    minute_of_day = slot_start.hour * 60 + slot_start.minute
    return to_minutes(rate_table.peak_start) <= minute_of_day < to_minutes(rate_table.peak_end)


def rate_for_slot(rate_table: RateTable, slot_start: datetime) -> Decimal:
    if rate_table.peak_hourly_rate is not None and _in_peak_window(rate_table, slot_start):
        return rate_table.peak_hourly_rate
    if rate_table.weekend_rate is not None and slot_start.isoweekday() in rate_table.weekend_days:
        return rate_table.weekend_rate
    return rate_table.base_hourly_rate


def price(rate_table: RateTable, start: datetime, end: datetime, granularity: int = 60) -> Decimal:
    if granularity <= 0:
        raise InvalidRangeError("granularity must be positive")
    if end <= start:
        raise InvalidRangeError("end must be after start")
    step = timedelta(minutes=granularity)
    if (end - start) % step:
        raise InvalidRangeError(f"range is not a whole number of {granularity}-minute slots")

    slot_hours = Decimal(granularity) / Decimal(60)
    total = Decimal("0")
    cursor = start
    while cursor < end:
        total += rate_for_slot(rate_table, cursor) * slot_hours
        cursor += step
    return _quantize(total)


def apply_member_discount(rate_table: RateTable, amount: Decimal) -> Decimal:
    if not rate_table.member_discount_percent:
        return amount
    discount = amount * rate_table.member_discount_percent / Decimal(100)
    return _quantize(amount - discount)


def standard_duration_prices(
    rate_table: RateTable,
    start: datetime,
    durations: Iterable[int] = DEFAULT_DURATIONS,
    granularity: int = 60,
) -> List[Tuple[int, Decimal]]:
    """Prices for the durations offered by the duration picker.

    Durations that are not a whole number of slots are skipped.
    """
    prices: List[Tuple[int, Decimal]] = []
    for minutes in durations:
        if minutes <= 0 or minutes % granularity:
            continue
        prices.append((minutes, price(rate_table, start, start + timedelta(minutes=minutes), granularity)))
    return prices
