from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, status
from fastapi.responses import JSONResponse

from ..deps import Services, get_admin_principal, get_current_principal, get_services
from ..domain.entities import Booking, Principal
from ..domain.errors import PaymentGatewayError
from ..schemas import BookingCancel, BookingCreate, BookingRead, ExpiredHoldsRead
from ..usecases import bookings as booking_usecase
from ..usecases import payments as payment_usecase
from ..usecases.assignment import NoCourtAvailable
from ..utils.audit_log import AuditAction, AuditInitiator, emit_audit_log
from .errors import CALLER_ERRORS, to_http_exception

router = APIRouter(prefix="", tags=["bookings"])


def _audit(
    action: AuditAction,
    initiator: AuditInitiator,
    booking: Booking,
    *,
    status_from: object = None,
    message: str | None = None,
    extra: dict | None = None,
) -> None:
    try:
        emit_audit_log(
            action=action,
            initiator=initiator,
            booking_id=booking.id,
            court_id=booking.court_id,
            user_id=booking.user_id,
            date=booking.date,
            start_time=booking.start_time,
            end_time=booking.end_time,
            status_from=status_from,
            status_to=booking.status,
            payment_status=booking.payment_status,
            message=message,
            extra=extra,
        )
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")


@router.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_current_principal),
):
    try:
        candidates = await services.catalog.list_for_venue(payload.venue_id)
        result = await booking_usecase.create_booking(
            services.assigner,
            services.bookings,
            date=payload.date,
            start_minutes=payload.start_minutes,
            duration=payload.duration_minutes,
            candidates=candidates,
            preferences=payload.preferences.to_domain(),
            requester=principal,
            currency=services.settings.currency,
            is_member=principal.is_member,
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)

    if isinstance(result, NoCourtAvailable):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": result.reason,
                "conflicts": {court_id: list(keys) for court_id, keys in result.conflicts.items()},
            },
        )

    _audit("booking.created", "user", result.booking)
    return BookingRead.from_domain(booking=result.booking)


@router.get("/me/bookings", response_model=List[BookingRead])
async def list_my_bookings(
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_current_principal),
) -> list[BookingRead]:
    rows = await services.bookings.list_by_user(principal.user_id)
    return [BookingRead.from_domain(booking=booking) for booking in rows]


@router.get("/bookings/{booking_id}", response_model=BookingRead)
async def get_booking(
    booking_id: str = Path(..., min_length=1),
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_current_principal),
) -> BookingRead:
    try:
        booking = await booking_usecase.get_booking(services.bookings, booking_id=booking_id, actor=principal)
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    return BookingRead.from_domain(booking=booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(
    payload: BookingCancel,
    booking_id: str = Path(..., min_length=1),
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_current_principal),
) -> BookingRead:
    try:
        cancellation = await booking_usecase.cancel_booking(
            services.reservations,
            services.bookings,
            booking_id=booking_id,
            actor=principal,
            reason=payload.reason,
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)

    initiator: AuditInitiator = "admin" if principal.is_admin else "user"
    booking = cancellation.booking
    if cancellation.changed:
        _audit(
            "booking.cancelled",
            initiator,
            booking,
            status_from=cancellation.previous.status,
            extra={"released": list(cancellation.released_keys)},
        )

    # A paid booking stays owed until the gateway accepts the refund; cancelling again retries it.
    try:
        booking, refund_id = await payment_usecase.settle_refund(
            services.gateway, services.reservations, services.bookings, booking=booking
        )
    except PaymentGatewayError as exc:
        _audit("booking.refund_failed", initiator, booking, message=str(exc))
        raise to_http_exception(exc)
    if refund_id is not None:
        _audit("booking.refunded", initiator, booking, extra={"refund_id": refund_id})
    return BookingRead.from_domain(booking=booking)


@router.post("/bookings/{booking_id}/heartbeat", response_model=BookingRead)
async def heartbeat(
    booking_id: str = Path(..., min_length=1),
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_current_principal),
) -> BookingRead:
    try:
        booking = await booking_usecase.touch_hold(
            services.reservations, services.bookings, booking_id=booking_id, actor=principal
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    return BookingRead.from_domain(booking=booking)


@router.post("/admin/bookings/{booking_id}/complete", response_model=BookingRead)
async def complete_booking(
    booking_id: str = Path(..., min_length=1),
    services: Services = Depends(get_services),
    admin: Principal = Depends(get_admin_principal),
) -> BookingRead:
    try:
        booking = await booking_usecase.complete_booking(
            services.reservations, services.bookings, booking_id=booking_id, actor=admin
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    _audit("booking.completed", "admin", booking)
    return BookingRead.from_domain(booking=booking)


@router.post("/admin/holds/expire", response_model=ExpiredHoldsRead)
async def expire_holds(
    services: Services = Depends(get_services),
    _: Principal = Depends(get_admin_principal),
) -> ExpiredHoldsRead:
    expired = await booking_usecase.expire_stale_holds(
        services.reservations,
        services.bookings,
        ttl_minutes=services.settings.hold_ttl_minutes,
    )
    for cancellation in expired:
        _audit(
            "booking.expired",
            "system",
            cancellation.booking,
            status_from=cancellation.previous.status,
            extra={"released": list(cancellation.released_keys)},
        )
    return ExpiredHoldsRead(expired_booking_ids=[c.booking.id for c in expired])
