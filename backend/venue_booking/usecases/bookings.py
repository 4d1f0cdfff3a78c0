from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence, Union

from ..domain import lifecycle
from ..domain.assignment import CourtPreferences
from ..domain.entities import Booking, Court, Principal
from ..domain.errors import BookingNotFoundError, InvalidTransitionError, UnauthorizedError
from ..domain.lifecycle import BookingState
from ..domain.repositories import Transaction
from ..domain.slots import minutes_to_key, slots_for_range
from ..infrastructure.counters import INVOICE_COUNTER, format_invoice_number, next_value_in
from ..infrastructure.repositories import DocumentBookingRepository
from ..models import BookingStatus
from ..utils.time import utc_now_naive
from .assignment import Assignment, CourtAssignmentEngine, NoCourtAvailable
from .reservations import ReservationEngine

logger = logging.getLogger(__name__)

HOLD_EXPIRED_REASON = "hold_expired"


@dataclass(frozen=True)
class BookingCreated:
    booking: Booking
    assignment: Assignment


@dataclass(frozen=True)
class Cancellation:
    booking: Booking
    previous: BookingState
    released_keys: tuple[str, ...]
    changed: bool


def state_of(booking: Booking) -> BookingState:
    return BookingState(booking.status, booking.payment_status)


def new_booking_id() -> str:
    return uuid.uuid4().hex


async def create_booking(
    assigner: CourtAssignmentEngine,
    bookings: DocumentBookingRepository,
    *,
    date: str,
    start_minutes: int,
    duration: int,
    candidates: Sequence[Court],
    preferences: Optional[CourtPreferences],
    requester: Principal,
    currency: str,
    is_member: bool = False,
) -> Union[BookingCreated, NoCourtAvailable]:
    """
    Assign a court and write the holding booking in the same transaction as the
    slot claim, so a claimed range always has its booking record and vice versa.
    """
    booking_id = new_booking_id()
    created: List[Booking] = []

    async def write_booking(txn: Transaction, court: Court, amount: Decimal) -> None:
        now = utc_now_naive()
        booking = Booking(
            id=booking_id,
            court_id=court.id,
            venue_id=court.venue_id,
            date=date,
            start_time=minutes_to_key(start_minutes),
            end_time=minutes_to_key(start_minutes + duration),
            user_id=requester.user_id,
            price=amount,
            currency=currency,
            status=lifecycle.INITIAL_STATE.status,
            payment_status=lifecycle.INITIAL_STATE.payment_status,
            created_at=now,
            updated_at=now,
            last_active=now,
        )
        bookings.put_in(txn, booking)
        # A retried transaction runs this again; keep only the last attempt.
        created[:] = [booking]

    result = await assigner.check_and_assign_court(
        date,
        start_minutes,
        duration,
        candidates,
        preferences,
        requester_id=requester.user_id,
        reservation_id=booking_id,
        on_assigned=write_booking,
        is_member=is_member,
    )
    if isinstance(result, NoCourtAvailable):
        return result
    logger.info("booking %s created on court %s", booking_id, result.court.id)
    return BookingCreated(booking=created[-1], assignment=result)


async def get_booking(bookings: DocumentBookingRepository, *, booking_id: str, actor: Principal) -> Booking:
    booking = await bookings.get(booking_id)
    if booking is None:
        raise BookingNotFoundError(f"booking {booking_id} not found")
    _check_owner(booking, actor)
    return booking


async def cancel_booking(
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking_id: str,
    actor: Principal,
    reason: Optional[str] = None,
) -> Cancellation:
    """Release the booking's slots and mark it cancelled in one transaction.

    Cancelling an already cancelled booking returns it unchanged. A paid
    booking is left `paid` (refund owed) for `payments.settle_refund`.
    """

    async def attempt(txn: Transaction) -> Cancellation:
        booking = await bookings.get_in(txn, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        _check_owner(booking, actor)
        return await _cancel_in(engine, bookings, txn, booking, reason=reason)

    result = await engine.run(attempt)
    _notify_released(engine, result)
    return result


async def cancel_hold(
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking_id: str,
    reason: Optional[str] = None,
) -> Cancellation:
    """Cancel the booking only if it is still an unpaid hold when the transaction runs."""

    async def attempt(txn: Transaction) -> Cancellation:
        booking = await bookings.get_in(txn, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        if not lifecycle.is_hold(state_of(booking)):
            return Cancellation(booking=booking, previous=state_of(booking), released_keys=(), changed=False)
        return await _cancel_in(engine, bookings, txn, booking, reason=reason)

    result = await engine.run(attempt)
    _notify_released(engine, result)
    return result


async def complete_booking(
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking_id: str,
    actor: Principal,
) -> Booking:
    if not actor.is_admin:
        raise UnauthorizedError("only administrators can complete bookings")

    async def attempt(txn: Transaction) -> Booking:
        booking = await bookings.get_in(txn, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        state = lifecycle.complete(state_of(booking))
        if state == state_of(booking):
            return booking
        updated = booking.model_copy(update={"status": state.status, "updated_at": utc_now_naive()})
        bookings.put_in(txn, updated)
        return updated

    return await engine.run(attempt)


async def confirm_payment(
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking_id: str,
    payment_intent_id: Optional[str] = None,
) -> tuple[Booking, BookingState]:
    """Payment success: holding/pending -> confirmed/paid, drawing the next invoice number.

    On a booking that was cancelled meanwhile the payment is recorded as owed
    back (cancelled/paid) instead; the caller settles it with a refund.
    Returns the booking and its previous state.
    """

    async def attempt(txn: Transaction) -> tuple[Booking, BookingState]:
        booking = await bookings.get_in(txn, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        previous = state_of(booking)
        if previous.is_cancelled:
            state = lifecycle.accept_late_payment(previous)
        else:
            state = lifecycle.confirm_payment(previous)
        if state == previous:
            return booking, previous
        update = {
            "status": state.status,
            "payment_status": state.payment_status,
            "payment_intent_id": payment_intent_id or booking.payment_intent_id,
            "updated_at": utc_now_naive(),
        }
        if state.status == BookingStatus.CONFIRMED and booking.invoice_number is None:
            update["invoice_number"] = format_invoice_number(await next_value_in(txn, INVOICE_COUNTER))
        updated = booking.model_copy(update=update)
        bookings.put_in(txn, updated)
        return updated, previous

    return await engine.run(attempt)


async def record_refund(
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking_id: str,
    refund_id: str,
) -> Booking:
    """Owed refund paid out: cancelled/paid -> cancelled/refunded."""

    async def attempt(txn: Transaction) -> Booking:
        booking = await bookings.get_in(txn, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        state = lifecycle.refund(state_of(booking))
        if state == state_of(booking):
            return booking
        updated = booking.model_copy(
            update={"payment_status": state.payment_status, "refund_id": refund_id, "updated_at": utc_now_naive()}
        )
        bookings.put_in(txn, updated)
        return updated

    return await engine.run(attempt)


async def touch_hold(
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking_id: str,
    actor: Principal,
) -> Booking:
    """Keep a holding booking alive while its owner is still on the payment step."""

    async def attempt(txn: Transaction) -> Booking:
        booking = await bookings.get_in(txn, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        _check_owner(booking, actor)
        if not lifecycle.is_hold(state_of(booking)):
            raise InvalidTransitionError(f"booking {booking_id} is no longer held")
        updated = booking.model_copy(update={"last_active": utc_now_naive()})
        bookings.put_in(txn, updated)
        return updated

    return await engine.run(attempt)


async def expire_stale_holds(
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    ttl_minutes: int,
    now: Optional[datetime] = None,
) -> List[Cancellation]:
    """Cancel holds whose owner has not been active for `ttl_minutes`, freeing their slots."""
    cutoff = (now or utc_now_naive()) - timedelta(minutes=ttl_minutes)
    expired: List[Cancellation] = []
    for candidate in await bookings.list_holds():
        if candidate.last_active >= cutoff:
            continue

        async def attempt(txn: Transaction, booking_id: str = candidate.id) -> Optional[Cancellation]:
            booking = await bookings.get_in(txn, booking_id)
            # Re-checked inside the transaction: payment or a heartbeat may have landed meanwhile.
            if booking is None or not lifecycle.is_hold(state_of(booking)) or booking.last_active >= cutoff:
                return None
            return await _cancel_in(engine, bookings, txn, booking, reason=HOLD_EXPIRED_REASON)

        result = await engine.run(attempt)
        if result is not None and result.changed:
            _notify_released(engine, result)
            expired.append(result)
    if expired:
        logger.info("expired %d stale holds", len(expired))
    return expired


async def _cancel_in(
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    txn: Transaction,
    booking: Booking,
    *,
    reason: Optional[str],
) -> Cancellation:
    previous = state_of(booking)
    state = lifecycle.cancel(previous)
    if state is None:
        return Cancellation(booking=booking, previous=previous, released_keys=(), changed=False)
    keys = slots_for_range(booking.start_time, booking.end_time, engine.granularity)
    released = await engine.release_in(
        txn,
        court_id=booking.court_id,
        date=booking.date,
        keys=keys,
        reservation_id=booking.id,
    )
    updated = booking.model_copy(
        update={
            "status": state.status,
            "payment_status": state.payment_status,
            "cancellation_reason": reason,
            "updated_at": utc_now_naive(),
        }
    )
    bookings.put_in(txn, updated)
    return Cancellation(booking=updated, previous=previous, released_keys=released.released_keys, changed=True)


def _notify_released(engine: ReservationEngine, cancellation: Cancellation) -> None:
    if cancellation.released_keys:
        booking = cancellation.booking
        engine.notify(booking.court_id, booking.date, cancellation.released_keys, "released")


def _check_owner(booking: Booking, actor: Principal) -> None:
    if not actor.is_admin and booking.user_id != actor.user_id:
        raise UnauthorizedError("booking belongs to another user")

