from __future__ import annotations

from typing import List, Optional

from ..domain.entities import Booking, Court
from ..domain.errors import CourtNotFoundError
from ..domain.repositories import DocumentStore, Transaction
from ..models import BookingStatus, PaymentStatus

BOOKINGS_COLLECTION = "bookings"
COURTS_COLLECTION = "courts"


class DocumentBookingRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, booking_id: str) -> Optional[Booking]:
        data = await self.store.get(BOOKINGS_COLLECTION, booking_id)
        return Booking.model_validate(data) if data is not None else None

    async def get_in(self, txn: Transaction, booking_id: str) -> Optional[Booking]:
        data = await txn.get(BOOKINGS_COLLECTION, booking_id)
        return Booking.model_validate(data) if data is not None else None

    def put_in(self, txn: Transaction, booking: Booking) -> None:
        txn.set(BOOKINGS_COLLECTION, booking.id, booking.model_dump(mode="json"))

    async def list_holds(self) -> List[Booking]:
        rows = await self.store.list(
            BOOKINGS_COLLECTION,
            where={"status": BookingStatus.HOLDING.value, "payment_status": PaymentStatus.PENDING.value},
        )
        return [Booking.model_validate(data) for _, data in rows]

    async def list_by_user(self, user_id: str) -> List[Booking]:
        rows = await self.store.list(BOOKINGS_COLLECTION, where={"user_id": user_id})
        bookings = [Booking.model_validate(data) for _, data in rows]
        return sorted(bookings, key=lambda b: (b.date, b.start_time))


class DocumentCourtCatalog:
    """Read-only view of the venue's courts."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, court_id: str) -> Court:
        data = await self.store.get(COURTS_COLLECTION, court_id)
        if data is None:
            raise CourtNotFoundError(f"court {court_id} not found")
        return Court.model_validate(data)

    async def list_for_venue(self, venue_id: str) -> List[Court]:
        rows = await self.store.list(COURTS_COLLECTION, where={"venue_id": venue_id})
        return [Court.model_validate(data) for _, data in rows]
