from dataclasses import dataclass
from typing import Optional

from ..models import BookingStatus, PaymentStatus
from .errors import InvalidTransitionError


@dataclass(frozen=True)
class BookingState:
    status: BookingStatus
    payment_status: PaymentStatus

    @property
    def is_cancelled(self) -> bool:
        return self.status == BookingStatus.CANCELLED


INITIAL_STATE = BookingState(BookingStatus.HOLDING, PaymentStatus.PENDING)


def confirm_payment(state: BookingState) -> BookingState:
    """
    Payment success: holding/pending -> confirmed/paid.
    Already paid bookings are returned unchanged. A cancelled booking cannot be
    revived by a late payment; the caller has to refund instead.
    """
    if state.payment_status == PaymentStatus.PAID and state.status in (
        BookingStatus.CONFIRMED,
        BookingStatus.COMPLETED,
    ):
        return state
    if state.is_cancelled:
        raise InvalidTransitionError("cannot confirm a cancelled booking")
    if state.status != BookingStatus.HOLDING:
        raise InvalidTransitionError(f"cannot confirm booking in status {state.status}")
    return BookingState(BookingStatus.CONFIRMED, PaymentStatus.PAID)


def accept_late_payment(state: BookingState) -> BookingState:
    """A payment captured for a cancelled booking is owed back; paid or refunded ones are left alone."""
    if not state.is_cancelled:
        raise InvalidTransitionError(f"booking in status {state.status} is not cancelled")
    if state.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return state
    return BookingState(BookingStatus.CANCELLED, PaymentStatus.PAID)


def cancel(state: BookingState) -> Optional[BookingState]:
    """
    Return the cancelled state, or None when the booking is already cancelled.
    A paid booking stays `paid` until the refund is recorded with `refund`.
    """
    if state.is_cancelled:
        return None
    payment = PaymentStatus.PAID if state.payment_status == PaymentStatus.PAID else PaymentStatus.CANCELLED
    return BookingState(BookingStatus.CANCELLED, payment)


def refund(state: BookingState) -> BookingState:
    if state.payment_status == PaymentStatus.REFUNDED:
        return state
    if not refund_due(state):
        raise InvalidTransitionError(f"nothing to refund for {state.status}/{state.payment_status}")
    return BookingState(BookingStatus.CANCELLED, PaymentStatus.REFUNDED)


def refund_due(state: BookingState) -> bool:
    return state.is_cancelled and state.payment_status == PaymentStatus.PAID


def complete(state: BookingState) -> BookingState:
    if state.status == BookingStatus.COMPLETED:
        return state
    if state.status != BookingStatus.CONFIRMED:
        raise InvalidTransitionError(f"only confirmed bookings can be completed (status {state.status})")
    return BookingState(BookingStatus.COMPLETED, state.payment_status)


def is_hold(state: BookingState) -> bool:
    return state.status == BookingStatus.HOLDING and state.payment_status == PaymentStatus.PENDING
