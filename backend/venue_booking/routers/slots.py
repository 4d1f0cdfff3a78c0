import json
from contextlib import aclosing
from typing import AsyncIterator, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from ..deps import Services, get_admin_principal, get_services
from ..domain.entities import Principal
from ..infrastructure.events import AvailabilityEvents
from ..schemas import (
    DayAvailabilityAdminRead,
    DayAvailabilityRead,
    GenerateMonthRequest,
    GenerateMonthResult,
    SlotRangeRequest,
    SlotRangeResult,
)
from ..usecases import slots as slot_usecase
from ..usecases.reservations import Conflict
from ..utils.audit_log import AuditAction, emit_audit_log
from .errors import CALLER_ERRORS, to_http_exception

router = APIRouter(prefix="", tags=["slots"])

KEEPALIVE_SECONDS = 30.0


@router.get("/courts/{court_id}/availability", response_model=DayAvailabilityRead)
async def get_availability(
    court_id: str = Path(..., min_length=1),
    date: str = Query(..., description="YYYY-MM-DD"),
    services: Services = Depends(get_services),
) -> DayAvailabilityRead:
    try:
        await services.catalog.get(court_id)
        day = await slot_usecase.get_availability(services.availability, court_id=court_id, date=date)
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    return DayAvailabilityRead.from_day(court_id=court_id, date=date, day=day)


@router.get("/admin/courts/{court_id}/availability", response_model=DayAvailabilityAdminRead)
async def get_availability_detail(
    court_id: str = Path(..., min_length=1),
    date: str = Query(..., description="YYYY-MM-DD"),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_admin_principal),
) -> DayAvailabilityAdminRead:
    try:
        day = await slot_usecase.get_availability(services.availability, court_id=court_id, date=date)
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    return DayAvailabilityAdminRead(court_id=court_id, date=date, slots=day)


@router.get("/courts/availability/events")
async def availability_events(
    court_id: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> EventSourceResponse:
    """Server-sent events telling availability views which court days to refresh."""
    return EventSourceResponse(availability_stream(services.events, court_id=court_id))


async def availability_stream(
    events: AvailabilityEvents,
    *,
    court_id: Optional[str] = None,
    keepalive_seconds: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[dict[str, str]]:
    async with aclosing(events.subscribe(court_id, keepalive_seconds=keepalive_seconds)) as changes:
        async for change in changes:
            if change is None:
                yield {"event": "ping", "data": "{}"}
                continue
            yield {
                "event": "availability",
                "data": json.dumps(
                    {
                        "court_id": change.court_id,
                        "date": change.date,
                        "slot_keys": list(change.slot_keys),
                        "kind": change.kind,
                    }
                ),
            }


@router.post("/admin/courts/{court_id}/block", response_model=SlotRangeResult)
async def block_slots(
    payload: SlotRangeRequest,
    court_id: str = Path(..., min_length=1),
    services: Services = Depends(get_services),
    admin: Principal = Depends(get_admin_principal),
):
    try:
        result = await slot_usecase.block_slots(
            services.reservations,
            court_id=court_id,
            date=payload.date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            actor=admin,
            block_id=uuid4().hex,
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)

    if isinstance(result, Conflict):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "slots already taken", "conflicts": list(result.conflicting_keys)},
        )

    _audit_range("slots.blocked", court_id, payload, admin, extra={"reservation_id": result.reservation_id})
    return SlotRangeResult(court_id=court_id, date=payload.date, slot_keys=list(result.slot_keys))


@router.post("/admin/courts/{court_id}/release", response_model=SlotRangeResult)
async def release_slots(
    payload: SlotRangeRequest,
    court_id: str = Path(..., min_length=1),
    services: Services = Depends(get_services),
    admin: Principal = Depends(get_admin_principal),
) -> SlotRangeResult:
    try:
        released = await slot_usecase.release_slots(
            services.reservations,
            court_id=court_id,
            date=payload.date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            actor=admin,
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)

    if released.released_keys:
        _audit_range("slots.released", court_id, payload, admin, extra={"released": list(released.released_keys)})
    return SlotRangeResult(court_id=court_id, date=payload.date, slot_keys=list(released.released_keys))


@router.post("/admin/availability/generate", response_model=GenerateMonthResult)
async def generate_month(
    payload: GenerateMonthRequest,
    services: Services = Depends(get_services),
    admin: Principal = Depends(get_admin_principal),
) -> GenerateMonthResult:
    try:
        written = await slot_usecase.generate_month(
            services.availability,
            services.catalog,
            venue_id=payload.venue_id,
            month=payload.month,
            actor=admin,
        )
    except CALLER_ERRORS as exc:
        raise to_http_exception(exc)
    return GenerateMonthResult(month=payload.month, slots_written=written)


def _audit_range(action: AuditAction, court_id: str, payload: SlotRangeRequest, admin: Principal, *, extra: dict) -> None:
    try:
        emit_audit_log(
            action=action,
            initiator="admin",
            court_id=court_id,
            user_id=admin.user_id,
            date=payload.date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            extra=extra,
        )
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")
