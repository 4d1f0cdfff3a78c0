from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .domain.assignment import CourtPreferences
from .domain.entities import Booking
from .domain.repositories import PaymentIntent
from .domain.slots import DayAvailability, TimeSlot
from .models import BookingStatus, CourtType, PaymentStatus
from .usecases.payments import GatewayStatus


class SlotRead(BaseModel):
    is_available: bool


class DayAvailabilityRead(BaseModel):
    court_id: str
    date: str
    slots: Dict[str, SlotRead]

    @classmethod
    def from_day(cls, *, court_id: str, date: str, day: DayAvailability) -> "DayAvailabilityRead":
        return cls(
            court_id=court_id,
            date=date,
            slots={key: SlotRead(is_available=slot.is_available) for key, slot in day.items()},
        )


class DayAvailabilityAdminRead(BaseModel):
    court_id: str
    date: str
    slots: Dict[str, TimeSlot]


class PreferencesIn(BaseModel):
    preferred_court_id: Optional[str] = None
    preferred_court_type: Optional[CourtType] = None
    preferred_sport_type: Optional[str] = None
    preferred_tags: List[str] = Field(default_factory=list)
    required_court_type: Optional[CourtType] = None
    required_sport_type: Optional[str] = None

    def to_domain(self) -> CourtPreferences:
        return CourtPreferences(
            preferred_court_id=self.preferred_court_id,
            preferred_court_type=self.preferred_court_type,
            preferred_sport_type=self.preferred_sport_type,
            preferred_tags=tuple(self.preferred_tags),
            required_court_type=self.required_court_type,
            required_sport_type=self.required_sport_type,
        )


class BookingCreate(BaseModel):
    venue_id: str
    date: str
    start_minutes: int = Field(ge=0, lt=24 * 60)
    duration_minutes: int = Field(gt=0, le=24 * 60)
    preferences: PreferencesIn = Field(default_factory=PreferencesIn)


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=200)


class BookingRead(BaseModel):
    booking_id: str
    court_id: str
    venue_id: str
    date: str
    start_time: str
    end_time: str
    user_id: str
    price: Decimal
    currency: str
    status: BookingStatus
    payment_status: PaymentStatus
    invoice_number: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, *, booking: Booking) -> "BookingRead":
        return cls(
            booking_id=booking.id,
            court_id=booking.court_id,
            venue_id=booking.venue_id,
            date=booking.date,
            start_time=booking.start_time,
            end_time=booking.end_time,
            user_id=booking.user_id,
            price=booking.price,
            currency=booking.currency,
            status=booking.status,
            payment_status=booking.payment_status,
            invoice_number=booking.invoice_number,
            cancellation_reason=booking.cancellation_reason,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class PaymentIntentRead(BaseModel):
    payment_intent_id: str
    client_secret: Optional[str]
    status: str
    amount: Decimal
    currency: str

    @classmethod
    def from_domain(cls, *, intent: PaymentIntent) -> "PaymentIntentRead":
        return cls(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
            amount=intent.amount,
            currency=intent.currency,
        )


class PaymentStatusUpdate(BaseModel):
    booking_id: str
    status: GatewayStatus
    payment_intent_id: Optional[str] = None


class SlotRangeRequest(BaseModel):
    date: str
    start_time: str
    end_time: str


class SlotRangeResult(BaseModel):
    court_id: str
    date: str
    slot_keys: List[str]


class GenerateMonthRequest(BaseModel):
    venue_id: str
    month: str = Field(pattern=r"^\d{4}-\d{2}$")


class GenerateMonthResult(BaseModel):
    month: str
    slots_written: int


class ExpiredHoldsRead(BaseModel):
    expired_booking_ids: List[str]
