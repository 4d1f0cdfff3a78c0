from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models import BookingStatus, CourtStatus, CourtType, PaymentStatus
from .slots import DayAvailability, is_valid_time_key


class RateTable(BaseModel):
    base_hourly_rate: Decimal = Field(ge=0)
    peak_hourly_rate: Optional[Decimal] = Field(default=None, ge=0)
    weekend_rate: Optional[Decimal] = Field(default=None, ge=0)
    peak_start: str = "17:00"
    peak_end: str = "21:00"
    # ISO weekdays: Monday=1 .. Sunday=7
    weekend_days: List[int] = Field(default_factory=lambda: [6, 7])
    member_discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)

    @field_validator("peak_start", "peak_end")
    @classmethod
    def _check_time(cls, value: str) -> str:
        if value != "24:00" and not is_valid_time_key(value):
            raise ValueError(f"invalid time {value!r}")
        return value

    @field_validator("weekend_days")
    @classmethod
    def _check_weekdays(cls, value: List[int]) -> List[int]:
        if any(day < 1 or day > 7 for day in value):
            raise ValueError("weekend_days must be ISO weekdays (1-7)")
        return value


class Court(BaseModel):
    id: str
    name: str
    venue_id: str
    court_type: CourtType = CourtType.OUTDOOR
    sport_types: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    rate_table: RateTable
    status: CourtStatus = CourtStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == CourtStatus.ACTIVE


class Booking(BaseModel):
    id: str
    court_id: str
    venue_id: str
    date: str
    start_time: str
    end_time: str
    user_id: str
    price: Decimal
    currency: str = "eur"
    status: BookingStatus = BookingStatus.HOLDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_intent_id: Optional[str] = None
    refund_id: Optional[str] = None
    invoice_number: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_active: datetime


class DateAvailability(BaseModel):
    slots: DayAvailability = Field(default_factory=dict)


class MonthlyAvailability(BaseModel):
    """Persisted availability for every court in one calendar month."""

    month: str
    courts: Dict[str, Dict[str, DateAvailability]] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def day(self, court_id: str, date: str) -> DayAvailability:
        court = self.courts.get(court_id, {})
        entry = court.get(date)
        return dict(entry.slots) if entry is not None else {}

    def set_slots(self, court_id: str, date: str, slots: DayAvailability) -> None:
        court = self.courts.setdefault(court_id, {})
        entry = court.setdefault(date, DateAvailability())
        entry.slots.update(slots)


class Principal(BaseModel):
    """Caller identity as supplied by the identity provider."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    is_admin: bool = False
    is_member: bool = False
