from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Optional

from ..domain import lifecycle
from ..domain.entities import Booking, Principal
from ..domain.errors import BookingNotFoundError, InvalidTransitionError, UnauthorizedError
from ..domain.lifecycle import BookingState
from ..domain.repositories import PaymentGateway, PaymentIntent, Transaction
from ..infrastructure.repositories import DocumentBookingRepository
from ..utils.time import utc_now_naive
from . import bookings as booking_usecase
from .reservations import ReservationEngine

logger = logging.getLogger(__name__)

PAYMENT_FAILED_REASON = "payment_failed"
SYSTEM = Principal(user_id="system", is_admin=True)


class GatewayStatus(StrEnum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"
    CANCELED = "canceled"


# Stripe PaymentIntent statuses with a status report equivalent; the rest leave the booking alone.
_GATEWAY_STATUS = {
    "succeeded": GatewayStatus.SUCCEEDED,
    "processing": GatewayStatus.PROCESSING,
    "canceled": GatewayStatus.CANCELED,
}


@dataclass(frozen=True)
class PaymentOutcome:
    booking: Booking
    previous: BookingState
    refund_id: Optional[str] = None


async def start_payment(
    gateway: PaymentGateway,
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking_id: str,
    actor: Principal,
) -> PaymentIntent:
    booking = await booking_usecase.get_booking(bookings, booking_id=booking_id, actor=actor)
    if not lifecycle.is_hold(booking_usecase.state_of(booking)):
        raise InvalidTransitionError(f"booking {booking_id} is not awaiting payment")

    intent = await gateway.create_payment_intent(
        amount=booking.price,
        currency=booking.currency,
        metadata={
            "booking_id": booking.id,
            "court_id": booking.court_id,
            "venue_id": booking.venue_id,
            "date": booking.date,
            "start_time": booking.start_time,
            "end_time": booking.end_time,
            "user_id": booking.user_id,
        },
    )

    async def attach(txn: Transaction) -> None:
        current = await bookings.get_in(txn, booking_id)
        if current is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        bookings.put_in(
            txn,
            current.model_copy(update={"payment_intent_id": intent.id, "last_active": utc_now_naive()}),
        )

    await engine.run(attach)
    logger.info("payment intent %s created for booking %s", intent.id, booking_id)
    return intent


async def settle_refund(
    gateway: PaymentGateway,
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking: Booking,
) -> tuple[Booking, Optional[str]]:
    """Pay back a cancelled booking that is still marked paid.

    The booking is only marked refunded once the gateway has accepted the
    refund, so a failed attempt leaves it owed and a later call retries it.
    The idempotency key keeps concurrent retries to a single refund.
    """
    if not lifecycle.refund_due(booking_usecase.state_of(booking)):
        return booking, None
    if booking.payment_intent_id is None:
        logger.error("booking %s is owed a refund but has no payment intent", booking.id)
        return booking, None
    refund_id = await gateway.refund(booking.payment_intent_id, idempotency_key=f"refund-{booking.id}")
    updated = await booking_usecase.record_refund(engine, bookings, booking_id=booking.id, refund_id=refund_id)
    logger.info("refund %s issued for booking %s", refund_id, booking.id)
    return updated, refund_id


async def apply_payment_status(
    gateway: PaymentGateway,
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking_id: str,
    status: GatewayStatus,
    payment_intent_id: Optional[str] = None,
) -> PaymentOutcome:
    """Drive the booking lifecycle from a gateway status report.

    A success arriving after the hold was cancelled is refunded, since the
    slots may already belong to someone else. A failure only cancels a
    booking that is still an unpaid hold when its transaction runs.
    """
    booking = await bookings.get(booking_id)
    if booking is None:
        raise BookingNotFoundError(f"booking {booking_id} not found")
    if payment_intent_id and booking.payment_intent_id and booking.payment_intent_id != payment_intent_id:
        raise UnauthorizedError("payment intent does not belong to this booking")

    if status == GatewayStatus.SUCCEEDED:
        updated, previous = await booking_usecase.confirm_payment(
            engine, bookings, booking_id=booking_id, payment_intent_id=payment_intent_id
        )
        if not lifecycle.refund_due(booking_usecase.state_of(updated)):
            return PaymentOutcome(booking=updated, previous=previous)
        logger.warning("payment succeeded for cancelled booking %s, refunding", booking_id)
        refunded, refund_id = await settle_refund(gateway, engine, bookings, booking=updated)
        return PaymentOutcome(booking=refunded, previous=previous, refund_id=refund_id)

    if status == GatewayStatus.PROCESSING:
        if lifecycle.is_hold(booking_usecase.state_of(booking)):
            booking = await booking_usecase.touch_hold(engine, bookings, booking_id=booking_id, actor=SYSTEM)
        return PaymentOutcome(booking=booking, previous=booking_usecase.state_of(booking))

    cancellation = await booking_usecase.cancel_hold(
        engine, bookings, booking_id=booking_id, reason=PAYMENT_FAILED_REASON
    )
    return PaymentOutcome(booking=cancellation.booking, previous=cancellation.previous)


async def recover_booking(
    gateway: PaymentGateway,
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking_id: str,
) -> PaymentOutcome:
    """Reconcile a booking with what the gateway knows about its payment.

    Covers status reports that never arrived and refunds that failed. Holds
    without a payment intent are left to the hold-expiry sweep.
    """
    booking = await bookings.get(booking_id)
    if booking is None:
        raise BookingNotFoundError(f"booking {booking_id} not found")
    if lifecycle.refund_due(booking_usecase.state_of(booking)):
        refunded, refund_id = await settle_refund(gateway, engine, bookings, booking=booking)
        return PaymentOutcome(booking=refunded, previous=booking_usecase.state_of(booking), refund_id=refund_id)
    if booking.payment_intent_id is None:
        return PaymentOutcome(booking=booking, previous=booking_usecase.state_of(booking))
    intent = await gateway.retrieve_payment_intent(booking.payment_intent_id)
    return await _reconcile(gateway, engine, bookings, booking=booking, intent=intent)


async def recover_payment(
    gateway: PaymentGateway,
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    payment_intent_id: str,
) -> PaymentOutcome:
    """Same as `recover_booking`, starting from the payment intent's booking metadata."""
    intent = await gateway.retrieve_payment_intent(payment_intent_id)
    booking_id = intent.metadata.get("booking_id")
    if not booking_id:
        raise BookingNotFoundError(f"payment intent {payment_intent_id} names no booking")
    booking = await bookings.get(booking_id)
    if booking is None:
        raise BookingNotFoundError(f"booking {booking_id} not found")
    return await _reconcile(gateway, engine, bookings, booking=booking, intent=intent)


async def _reconcile(
    gateway: PaymentGateway,
    engine: ReservationEngine,
    bookings: DocumentBookingRepository,
    *,
    booking: Booking,
    intent: PaymentIntent,
) -> PaymentOutcome:
    status = _GATEWAY_STATUS.get(intent.status)
    if status is None:
        logger.info("booking %s: payment %s is %s, nothing to reconcile", booking.id, intent.id, intent.status)
        return PaymentOutcome(booking=booking, previous=booking_usecase.state_of(booking))
    outcome = await apply_payment_status(
        gateway, engine, bookings, booking_id=booking.id, status=status, payment_intent_id=intent.id
    )
    if outcome.previous != booking_usecase.state_of(outcome.booking):
        logger.info("booking %s reconciled with payment %s (%s)", booking.id, intent.id, intent.status)
    return outcome
