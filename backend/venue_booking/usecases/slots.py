from typing import List

from ..domain.entities import Principal
from ..domain.errors import InvalidTransitionError, UnauthorizedError
from ..domain.repositories import Transaction
from ..domain.slots import DayAvailability, TimeLike, TimeSlot, parse_date
from ..infrastructure.availability import AvailabilityStore
from ..infrastructure.repositories import DocumentCourtCatalog
from .reservations import Released, ReservationEngine, ReserveResult

BLOCK_PREFIX = "block-"


async def get_availability(
    availability: AvailabilityStore,
    *,
    court_id: str,
    date: str,
) -> DayAvailability:
    return await availability.read(court_id, date)


async def block_slots(
    engine: ReservationEngine,
    *,
    court_id: str,
    date: str,
    start_time: TimeLike,
    end_time: TimeLike,
    actor: Principal,
    block_id: str,
) -> ReserveResult:
    """Take a range off sale (maintenance, events). Same atomicity as a booking."""
    _require_admin(actor)
    return await engine.reserve(
        court_id,
        date,
        start_time,
        end_time,
        requester_id=actor.user_id,
        reservation_id=f"{BLOCK_PREFIX}{block_id}",
    )


async def release_slots(
    engine: ReservationEngine,
    *,
    court_id: str,
    date: str,
    start_time: TimeLike,
    end_time: TimeLike,
    actor: Principal,
) -> Released:
    """Administrative release of blocked slots in range.

    Slots held by a booking are refused as a whole; those go through
    cancel_booking so the booking record and its slots change together.
    """
    _require_admin(actor)
    keys = engine.slot_keys(date, start_time, end_time)

    async def attempt(txn: Transaction) -> Released:
        day = await engine.availability.read_in(txn, court_id, date)
        booked = [key for key in keys if key in day and not day[key].is_available and _is_booking(day[key])]
        if booked:
            raise InvalidTransitionError(f"slots {', '.join(booked)} belong to bookings; cancel the booking instead")
        return await engine.release_in(txn, court_id=court_id, date=date, keys=keys)

    released = await engine.run(attempt)
    if released.released_keys:
        engine.notify(court_id, date, released.released_keys, "released")
    return released


async def generate_month(
    availability: AvailabilityStore,
    catalog: DocumentCourtCatalog,
    *,
    venue_id: str,
    month: str,
    actor: Principal,
) -> int:
    _require_admin(actor)
    parse_date(f"{month}-01")
    courts = await catalog.list_for_venue(venue_id)
    court_ids: List[str] = [court.id for court in courts]
    return await availability.generate_month(court_ids, month)


def _require_admin(actor: Principal) -> None:
    if not actor.is_admin:
        raise UnauthorizedError("administrator capability required")


def _is_booking(slot: TimeSlot) -> bool:
    return slot.reservation_id is not None and not slot.reservation_id.startswith(BLOCK_PREFIX)
