from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

from ..domain.entities import MonthlyAvailability
from ..domain.repositories import DocumentStore, Transaction
from ..domain.slots import DayAvailability, TimeSlot, default_day, operating_slot_keys, parse_date, year_month

logger = logging.getLogger(__name__)

AVAILABILITY_COLLECTION = "availability"


@dataclass(frozen=True)
class OperatingHours:
    opening_time: str = "08:00"
    closing_time: str = "22:00"
    granularity: int = 60

    def slot_keys(self) -> list[str]:
        return operating_slot_keys(self.opening_time, self.closing_time, self.granularity)


def merge_with_template(stored: Mapping[str, TimeSlot], hours: OperatingHours) -> DayAvailability:
    """
    Overlay persisted slots on the all-available template for the operating hours.
    Every operating slot key is present in the result; stored keys outside the
    operating hours are kept so reservations made under older hours stay visible.
    """
    merged = default_day(hours.opening_time, hours.closing_time, hours.granularity)
    for key, slot in stored.items():
        merged[key] = slot.model_copy()
    return dict(sorted(merged.items()))


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AvailabilityStore:
    """Loads and saves month documents (``availability/<YYYY-MM>``).

    Mutations of slot state belong to the reservation engine, which goes
    through ``read_in``/``write_slots_in`` inside its own transaction.
    """

    def __init__(self, store: DocumentStore, hours: OperatingHours) -> None:
        self.store = store
        self.hours = hours

    async def load(self, court_id: str, month: str) -> MonthlyAvailability:
        data = await self.store.get(AVAILABILITY_COLLECTION, month)
        if data is None:
            return MonthlyAvailability(month=month, courts={court_id: {}})
        return MonthlyAvailability.model_validate(data)

    async def read(self, court_id: str, date: str) -> DayAvailability:
        parse_date(date)
        monthly = await self.load(court_id, year_month(date))
        return merge_with_template(monthly.day(court_id, date), self.hours)

    async def save(self, monthly: MonthlyAvailability) -> None:
        now = _utc_now_naive()
        if monthly.created_at is None:
            monthly.created_at = now
        monthly.updated_at = now
        await self.store.upsert(AVAILABILITY_COLLECTION, monthly.month, monthly.model_dump(mode="json"))

    async def load_in(self, txn: Transaction, month: str) -> Optional[MonthlyAvailability]:
        data = await txn.get(AVAILABILITY_COLLECTION, month)
        return MonthlyAvailability.model_validate(data) if data is not None else None

    async def read_in(self, txn: Transaction, court_id: str, date: str) -> DayAvailability:
        monthly = await self.load_in(txn, year_month(date))
        stored = monthly.day(court_id, date) if monthly is not None else {}
        return merge_with_template(stored, self.hours)

    def write_slots_in(self, txn: Transaction, court_id: str, date: str, slots: DayAvailability) -> None:
        """Merge-write only the given slots into the month document (created if missing)."""
        month = year_month(date)
        now = _utc_now_naive().isoformat()
        patch = {
            "month": month,
            "courts": {
                court_id: {
                    date: {"slots": {key: slot.model_dump(mode="json") for key, slot in slots.items()}},
                },
            },
            "updated_at": now,
        }
        txn.set(AVAILABILITY_COLLECTION, month, patch, merge=True)
        logger.debug("queued %d slot writes for %s on %s", len(slots), court_id, date)

    async def generate_month(self, court_ids: list[str], month: str) -> int:
        """Materialize the all-available template for every day of `month`.

        Slots already stored (reserved or not) are left untouched. Returns the
        number of slots written.
        """
        first = parse_date(f"{month}-01")

        async def fill(txn: Transaction) -> int:
            monthly = await self.load_in(txn, month) or MonthlyAvailability(month=month)
            written = 0
            for court_id in court_ids:
                day = first
                while day.month == first.month:
                    date = day.isoformat()
                    stored = monthly.day(court_id, date)
                    missing = {key: TimeSlot.available() for key in self.hours.slot_keys() if key not in stored}
                    if missing:
                        self.write_slots_in(txn, court_id, date, missing)
                        written += len(missing)
                    day += timedelta(days=1)
            return written

        written = await self.store.run_transaction(fill)
        logger.info("generated availability for %s: %d slots across %d courts", month, written, len(court_ids))
        return written
