from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional, Sequence, Tuple, Union

from ..domain.assignment import CourtPreferences, rank_courts
from ..domain.entities import Court
from ..domain.errors import InvalidRangeError
from ..domain.pricing import apply_member_discount, price
from ..domain.repositories import Transaction
from ..domain.slots import minutes_to_key, parse_date
from .reservations import Reserved, ReservationEngine

logger = logging.getLogger(__name__)

OnAssigned = Callable[[Transaction, Court, Decimal], Awaitable[None]]


@dataclass(frozen=True)
class Assignment:
    court: Court
    price: Decimal
    date: str
    start_time: str
    end_time: str
    reservation: Reserved


@dataclass(frozen=True)
class NoCourtAvailable:
    reason: str
    conflicts: Dict[str, Tuple[str, ...]] = field(default_factory=dict)


AssignmentResult = Union[Assignment, NoCourtAvailable]


class CourtAssignmentEngine:
    def __init__(self, reservations: ReservationEngine) -> None:
        self.reservations = reservations

    def quote(self, court: Court, date: str, start_minutes: int, duration: int, *, is_member: bool = False) -> Decimal:
        start = datetime.combine(parse_date(date), time()) + timedelta(minutes=start_minutes)
        amount = price(court.rate_table, start, start + timedelta(minutes=duration), self.reservations.granularity)
        return apply_member_discount(court.rate_table, amount) if is_member else amount

    async def check_and_assign_court(
        self,
        date: str,
        start_minutes: int,
        duration: int,
        candidates: Sequence[Court],
        preferences: Optional[CourtPreferences] = None,
        *,
        requester_id: str,
        reservation_id: str,
        on_assigned: Optional[OnAssigned] = None,
        is_member: bool = False,
    ) -> AssignmentResult:
        """
        Reserve the best-scoring court that is still free for the range.

        Courts are tried in rank order; a conflict on one court moves on to the
        next, since availability may have changed since the candidates were
        scored. `on_assigned` runs inside the winning reservation's transaction.
        """
        if duration <= 0:
            raise InvalidRangeError("duration must be positive")
        start_time = minutes_to_key(start_minutes)
        end_time = minutes_to_key(start_minutes + duration)
        self.reservations.slot_keys(date, start_time, end_time)

        ranked = rank_courts(candidates, preferences or CourtPreferences())
        if not ranked:
            return NoCourtAvailable(reason="no active court matches the requirements")

        conflicts: Dict[str, Tuple[str, ...]] = {}
        for scored in ranked:
            court = scored.court
            amount = self.quote(court, date, start_minutes, duration, is_member=is_member)
            hook = None
            if on_assigned is not None:
                hook = _bind_hook(on_assigned, court, amount)
            result = await self.reservations.reserve(
                court.id,
                date,
                start_time,
                end_time,
                requester_id,
                reservation_id,
                on_reserved=hook,
            )
            if isinstance(result, Reserved):
                logger.info("assigned court %s (score %.2f) for %s %s-%s", court.id, scored.score, date, start_time, end_time)
                return Assignment(
                    court=court,
                    price=amount,
                    date=date,
                    start_time=start_time,
                    end_time=end_time,
                    reservation=result,
                )
            conflicts[court.id] = result.conflicting_keys

        return NoCourtAvailable(reason="all candidate courts are taken for this time", conflicts=conflicts)


def _bind_hook(on_assigned: OnAssigned, court: Court, amount: Decimal) -> Callable[[Transaction], Awaitable[None]]:
    async def hook(txn: Transaction) -> None:
        await on_assigned(txn, court, amount)

    return hook
