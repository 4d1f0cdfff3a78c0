from fastapi import APIRouter, Depends, HTTPException, Path, status

from ..deps import Services, get_admin_principal, get_current_principal, get_services
from ..domain.entities import Principal
from ..models import BookingStatus
from ..schemas import BookingRead, PaymentIntentRead, PaymentStatusUpdate
from ..usecases import payments as payment_usecase
from ..utils.audit_log import AuditAction, emit_audit_log
from .errors import CALLER_ERRORS, to_http_exception

router = APIRouter(prefix="", tags=["payments"])


@router.post("/bookings/{booking_id}/payment-intent", response_model=PaymentIntentRead)
async def create_payment_intent(
    booking_id: str = Path(..., min_length=1),
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_current_principal),
) -> PaymentIntentRead:
    try:
        intent = await payment_usecase.start_payment(
            services.gateway,
            services.reservations,
            services.bookings,
            booking_id=booking_id,
            actor=principal,
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    return PaymentIntentRead.from_domain(intent=intent)


@router.post("/payments/status", response_model=BookingRead)
async def payment_status(
    payload: PaymentStatusUpdate,
    services: Services = Depends(get_services),
    _: Principal = Depends(get_admin_principal),
) -> BookingRead:
    """Gateway status relay. Callers are trusted back-office processes holding an admin token."""
    try:
        outcome = await payment_usecase.apply_payment_status(
            services.gateway,
            services.reservations,
            services.bookings,
            booking_id=payload.booking_id,
            status=payload.status,
            payment_intent_id=payload.payment_intent_id,
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    _audit_outcome(outcome, extra={"gateway_status": payload.status.value})
    return BookingRead.from_domain(booking=outcome.booking)


@router.post("/admin/bookings/{booking_id}/recover", response_model=BookingRead)
async def recover_booking(
    booking_id: str = Path(..., min_length=1),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_admin_principal),
) -> BookingRead:
    try:
        outcome = await payment_usecase.recover_booking(
            services.gateway, services.reservations, services.bookings, booking_id=booking_id
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    _audit_outcome(outcome, extra={"recovery": True})
    return BookingRead.from_domain(booking=outcome.booking)


@router.post("/admin/payments/{payment_intent_id}/recover", response_model=BookingRead)
async def recover_payment(
    payment_intent_id: str = Path(..., min_length=1),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_admin_principal),
) -> BookingRead:
    try:
        outcome = await payment_usecase.recover_payment(
            services.gateway, services.reservations, services.bookings, payment_intent_id=payment_intent_id
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    _audit_outcome(outcome, extra={"recovery": True})
    return BookingRead.from_domain(booking=outcome.booking)


def _audit_outcome(outcome: payment_usecase.PaymentOutcome, *, extra: dict) -> None:
    booking = outcome.booking
    if outcome.refund_id is not None:
        action: AuditAction = "booking.refunded"
    elif outcome.previous.status == booking.status:
        return
    elif booking.status == BookingStatus.CONFIRMED:
        action = "booking.confirmed"
    else:
        action = "booking.cancelled"
    try:
        emit_audit_log(
            action=action,
            initiator="system",
            booking_id=booking.id,
            court_id=booking.court_id,
            user_id=booking.user_id,
            date=booking.date,
            start_time=booking.start_time,
            end_time=booking.end_time,
            status_from=outcome.previous.status,
            status_to=booking.status,
            payment_status=booking.payment_status,
            extra={**extra, "refund_id": outcome.refund_id, "invoice_number": booking.invoice_number},
        )
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")
