from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar, Union

from ..domain.entities import Principal
from ..domain.errors import InvalidRangeError, StoreUnavailableError, UnauthorizedError
from ..domain.repositories import Transaction
from ..domain.slots import TimeLike, TimeSlot, parse_date, slots_for_range
from ..infrastructure.availability import AvailabilityStore
from ..infrastructure.events import AvailabilityChanged, AvailabilityEvents, ChangeKind

logger = logging.getLogger(__name__)

T = TypeVar("T")
OnReserved = Callable[[Transaction], Awaitable[None]]


@dataclass(frozen=True)
class Reserved:
    court_id: str
    date: str
    slot_keys: Tuple[str, ...]
    reservation_id: str


@dataclass(frozen=True)
class Conflict:
    court_id: str
    date: str
    conflicting_keys: Tuple[str, ...]


@dataclass(frozen=True)
class Released:
    court_id: str
    date: str
    released_keys: Tuple[str, ...]


ReserveResult = Union[Reserved, Conflict]


class ReservationEngine:
    """Atomic claim and release of contiguous slot ranges.

    Every check-then-set covers the whole range inside one store transaction,
    so two overlapping requests can never both win. A conflict is returned,
    not raised; nothing is written in that case.
    """

    def __init__(
        self,
        availability: AvailabilityStore,
        *,
        timeout_seconds: float = 10.0,
        events: Optional[AvailabilityEvents] = None,
    ) -> None:
        self.availability = availability
        self.timeout_seconds = timeout_seconds
        self.events = events

    @property
    def granularity(self) -> int:
        return self.availability.hours.granularity

    def slot_keys(self, date: str, start_time: TimeLike, end_time: TimeLike) -> List[str]:
        """Validate the request and return the slot keys it covers."""
        parse_date(date)
        keys = slots_for_range(start_time, end_time, self.granularity)
        operating = set(self.availability.hours.slot_keys())
        outside = [key for key in keys if key not in operating]
        if outside:
            raise InvalidRangeError(f"slots outside operating hours: {', '.join(outside)}")
        return keys

    async def reserve(
        self,
        court_id: str,
        date: str,
        start_time: TimeLike,
        end_time: TimeLike,
        requester_id: str,
        reservation_id: str,
        on_reserved: Optional[OnReserved] = None,
    ) -> ReserveResult:
        if not requester_id:
            raise ValueError("requester_id is required")
        if not reservation_id:
            raise ValueError("reservation_id is required")
        keys = self.slot_keys(date, start_time, end_time)

        async def attempt(txn: Transaction) -> ReserveResult:
            return await self.reserve_in(
                txn,
                court_id=court_id,
                date=date,
                keys=keys,
                requester_id=requester_id,
                reservation_id=reservation_id,
                on_reserved=on_reserved,
            )

        result = await self._bounded(self.availability.store.run_transaction(attempt))
        if isinstance(result, Reserved):
            logger.info("reserved %s %s %s for %s", court_id, date, ",".join(keys), reservation_id)
            self.notify(court_id, date, result.slot_keys, "reserved")
        else:
            logger.info("conflict reserving %s %s: %s", court_id, date, ",".join(result.conflicting_keys))
        return result

    async def reserve_in(
        self,
        txn: Transaction,
        *,
        court_id: str,
        date: str,
        keys: List[str],
        requester_id: str,
        reservation_id: str,
        on_reserved: Optional[OnReserved] = None,
    ) -> ReserveResult:
        day = await self.availability.read_in(txn, court_id, date)
        conflicts = tuple(key for key in keys if key not in day or not day[key].is_available)
        if conflicts:
            return Conflict(court_id=court_id, date=date, conflicting_keys=conflicts)
        if on_reserved is not None:
            await on_reserved(txn)
        claimed = {key: TimeSlot.reserved(reserved_by=requester_id, reservation_id=reservation_id) for key in keys}
        self.availability.write_slots_in(txn, court_id, date, claimed)
        return Reserved(court_id=court_id, date=date, slot_keys=tuple(keys), reservation_id=reservation_id)

    async def release(
        self,
        court_id: str,
        date: str,
        start_time: TimeLike,
        end_time: TimeLike,
        reservation_id: Optional[str] = None,
        actor: Optional[Principal] = None,
    ) -> Released:
        """
        Free the range. With `reservation_id` only slots held by that reservation
        are freed; without it every slot in range is freed, which is an
        administrative override. Already available slots are left as they are.
        """
        if reservation_id is None and (actor is None or not actor.is_admin):
            raise UnauthorizedError("releasing slots without a reservation id requires an administrator")
        keys = self.slot_keys(date, start_time, end_time)

        async def attempt(txn: Transaction) -> Released:
            return await self.release_in(txn, court_id=court_id, date=date, keys=keys, reservation_id=reservation_id)

        result = await self._bounded(self.availability.store.run_transaction(attempt))
        if result.released_keys:
            logger.info("released %s %s %s", court_id, date, ",".join(result.released_keys))
            self.notify(court_id, date, result.released_keys, "released")
        return result

    async def release_in(
        self,
        txn: Transaction,
        *,
        court_id: str,
        date: str,
        keys: List[str],
        reservation_id: Optional[str] = None,
    ) -> Released:
        day = await self.availability.read_in(txn, court_id, date)
        freed = {}
        for key in keys:
            slot = day.get(key)
            if slot is None or slot.is_available:
                continue
            if reservation_id is not None and slot.reservation_id != reservation_id:
                continue
            freed[key] = TimeSlot.available()
        if freed:
            self.availability.write_slots_in(txn, court_id, date, freed)
        return Released(court_id=court_id, date=date, released_keys=tuple(freed))

    async def run(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run `fn` in one bounded store transaction.

        Booking writes that must commit together with a slot change (create,
        cancel, expire) go through here alongside `reserve_in`/`release_in`.
        """
        return await self._bounded(self.availability.store.run_transaction(fn))

    async def _bounded(self, operation: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error("store transaction timed out after %.1fs", self.timeout_seconds)
            raise StoreUnavailableError("store transaction timed out") from exc

    def notify(self, court_id: str, date: str, keys: Tuple[str, ...], kind: ChangeKind) -> None:
        if self.events is None:
            return
        self.events.publish(AvailabilityChanged(court_id=court_id, date=date, slot_keys=keys, kind=kind))
