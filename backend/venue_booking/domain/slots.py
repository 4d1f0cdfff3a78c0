"""Time-slot model: the bookable intervals of one court on one day.

Slots are keyed by their start label (``"HH:MM"``). A range is given as
start/end labels (or minutes from midnight) and must be aligned to the
configured granularity; ``"24:00"`` is accepted as an end of range only.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, model_validator

from .errors import InvalidDateFormatError, InvalidRangeError

MINUTES_PER_DAY = 24 * 60

_TIME_KEY_RE = re.compile(r"^(\d{2}):(\d{2})$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

TimeLike = Union[str, int]


class TimeSlot(BaseModel):
    is_available: bool = True
    reserved_by: Optional[str] = None
    reservation_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_reservation_fields(self) -> "TimeSlot":
        if self.is_available and (self.reserved_by is not None or self.reservation_id is not None):
            raise ValueError("available slot cannot carry a reservation")
        if not self.is_available and not self.reserved_by:
            raise ValueError("unavailable slot must name who reserved it")
        return self

    @classmethod
    def available(cls) -> "TimeSlot":
        return cls()

    @classmethod
    def reserved(cls, *, reserved_by: str, reservation_id: Optional[str]) -> "TimeSlot":
        return cls(is_available=False, reserved_by=reserved_by, reservation_id=reservation_id)


DayAvailability = Dict[str, TimeSlot]


def is_valid_time_key(key: object) -> bool:
    if not isinstance(key, str):
        return False
    match = _TIME_KEY_RE.match(key)
    if match is None:
        return False
    hour, minute = int(match.group(1)), int(match.group(2))
    return 0 <= hour <= 23 and 0 <= minute <= 59


def to_minutes(value: TimeLike) -> int:
    """Convert ``"HH:MM"`` (``"24:00"`` allowed) or an int to minutes from midnight."""
    if isinstance(value, bool):
        raise InvalidRangeError(f"invalid time: {value!r}")
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, str):
        if value == "24:00":
            return MINUTES_PER_DAY
        if not is_valid_time_key(value):
            raise InvalidRangeError(f"invalid time: {value!r}")
        hour, minute = value.split(":")
        minutes = int(hour) * 60 + int(minute)
    else:
        raise InvalidRangeError(f"invalid time: {value!r}")
    if not 0 <= minutes <= MINUTES_PER_DAY:
        raise InvalidRangeError(f"time out of day bounds: {value!r}")
    return minutes


def minutes_to_key(minutes: int) -> str:
    if not 0 <= minutes <= MINUTES_PER_DAY:
        raise InvalidRangeError(f"time out of day bounds: {minutes}")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def slots_for_range(start_time: TimeLike, end_time: TimeLike, granularity: int) -> List[str]:
    """Return the ordered slot keys covering ``[start_time, end_time)``."""
    if granularity <= 0:
        raise InvalidRangeError("granularity must be positive")
    start = to_minutes(start_time)
    end = to_minutes(end_time)
    if end <= start:
        raise InvalidRangeError("end must be after start")
    if start % granularity or end % granularity:
        raise InvalidRangeError(f"range {start_time}-{end_time} is not aligned to {granularity} minutes")
    return [minutes_to_key(m) for m in range(start, end, granularity)]


def operating_slot_keys(opening_time: TimeLike, closing_time: TimeLike, granularity: int) -> List[str]:
    return slots_for_range(opening_time, closing_time, granularity)


def default_day(opening_time: TimeLike, closing_time: TimeLike, granularity: int) -> DayAvailability:
    return {key: TimeSlot.available() for key in operating_slot_keys(opening_time, closing_time, granularity)}


def parse_date(value: str) -> date:
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise InvalidDateFormatError(f"expected YYYY-MM-DD, got {value!r}")
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise InvalidDateFormatError(f"invalid calendar date: {value!r}") from exc


def year_month(value: str) -> str:
    """``"2024-06-01"`` -> ``"2024-06"`` (the availability document id)."""
    parsed = parse_date(value)
    return f"{parsed.year:04d}-{parsed.month:02d}"
