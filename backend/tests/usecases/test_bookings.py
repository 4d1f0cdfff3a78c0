import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest
from venue_booking.domain.entities import Booking, Court, Principal, RateTable
from venue_booking.domain.errors import BookingNotFoundError, InvalidTransitionError, UnauthorizedError
from venue_booking.infrastructure.availability import AvailabilityStore, OperatingHours
from venue_booking.infrastructure.document_store import InMemoryDocumentStore
from venue_booking.infrastructure.repositories import DocumentBookingRepository
from venue_booking.models import BookingStatus, PaymentStatus
from venue_booking.usecases import bookings as uc
from venue_booking.usecases.assignment import CourtAssignmentEngine, NoCourtAvailable
from venue_booking.usecases.reservations import ReservationEngine
from venue_booking.utils.time import utc_now_naive

ALICE = Principal(user_id="alice")
BOB = Principal(user_id="bob")
ADMIN = Principal(user_id="admin", is_admin=True)
COURTS = [
    Court(id="c1", name="Court 1", venue_id="v1", rate_table=RateTable(base_hourly_rate=Decimal("20"))),
    Court(id="c2", name="Court 2", venue_id="v1", rate_table=RateTable(base_hourly_rate=Decimal("22"))),
]


class Env:
    def __init__(self) -> None:
        documents = InMemoryDocumentStore(max_retries=10)
        self.availability = AvailabilityStore(documents, OperatingHours("08:00", "22:00", 60))
        self.engine = ReservationEngine(self.availability)
        self.assigner = CourtAssignmentEngine(self.engine)
        self.bookings = DocumentBookingRepository(documents)

    async def book(self, requester: Principal = ALICE, start_minutes: int = 600, duration: int = 60, **kwargs: Any) -> Booking:
        result = await uc.create_booking(
            self.assigner,
            self.bookings,
            date="2024-06-03",
            start_minutes=start_minutes,
            duration=duration,
            candidates=kwargs.pop("candidates", COURTS),
            preferences=None,
            requester=requester,
            currency="eur",
            **kwargs,
        )
        assert isinstance(result, uc.BookingCreated)
        return result.booking


@pytest.mark.asyncio
async def test_create_booking_writes_hold_and_claims_slots() -> None:
    env = Env()
    booking = await env.book(duration=120)

    assert booking.status == BookingStatus.HOLDING
    assert booking.payment_status == PaymentStatus.PENDING
    assert (booking.court_id, booking.start_time, booking.end_time) == ("c1", "10:00", "12:00")
    assert booking.price == Decimal("40.00")
    assert await env.bookings.get(booking.id) == booking

    day = await env.availability.read("c1", "2024-06-03")
    assert {day[k].reservation_id for k in ("10:00", "11:00")} == {booking.id}
    assert day["10:00"].reserved_by == "alice"


@pytest.mark.asyncio
async def test_concurrent_bookings_spread_over_courts_then_fail() -> None:
    env = Env()
    results = await asyncio.gather(
        *(
            uc.create_booking(
                env.assigner,
                env.bookings,
                date="2024-06-03",
                start_minutes=600,
                duration=60,
                candidates=COURTS,
                preferences=None,
                requester=Principal(user_id=f"user-{i}"),
                currency="eur",
            )
            for i in range(3)
        )
    )
    created = [r for r in results if isinstance(r, uc.BookingCreated)]
    assert sorted(r.booking.court_id for r in created) == ["c1", "c2"]
    assert sum(isinstance(r, NoCourtAvailable) for r in results) == 1
    stored = await env.bookings.list_holds()
    assert len(stored) == 2


@pytest.mark.asyncio
async def test_get_booking_checks_owner() -> None:
    env = Env()
    booking = await env.book()
    assert (await uc.get_booking(env.bookings, booking_id=booking.id, actor=ADMIN)).id == booking.id
    with pytest.raises(UnauthorizedError):
        await uc.get_booking(env.bookings, booking_id=booking.id, actor=BOB)
    with pytest.raises(BookingNotFoundError):
        await uc.get_booking(env.bookings, booking_id="missing", actor=ALICE)


@pytest.mark.asyncio
async def test_cancel_releases_slots_and_is_idempotent() -> None:
    env = Env()
    booking = await env.book()

    first = await uc.cancel_booking(env.engine, env.bookings, booking_id=booking.id, actor=ALICE, reason="rain")
    assert first.changed
    assert first.released_keys == ("10:00",)
    assert first.booking.status == BookingStatus.CANCELLED
    assert first.booking.payment_status == PaymentStatus.CANCELLED
    assert first.booking.cancellation_reason == "rain"
    assert (await env.availability.read("c1", "2024-06-03"))["10:00"].is_available

    second = await uc.cancel_booking(env.engine, env.bookings, booking_id=booking.id, actor=ALICE)
    assert not second.changed
    assert second.released_keys == ()


@pytest.mark.asyncio
async def test_cancel_by_other_user_is_rejected() -> None:
    env = Env()
    booking = await env.book()
    with pytest.raises(UnauthorizedError):
        await uc.cancel_booking(env.engine, env.bookings, booking_id=booking.id, actor=BOB)
    assert not (await env.availability.read("c1", "2024-06-03"))["10:00"].is_available


@pytest.mark.asyncio
async def test_cancel_does_not_free_slots_of_another_booking() -> None:
    env = Env()
    booking = await env.book(candidates=COURTS[:1])
    await uc.cancel_booking(env.engine, env.bookings, booking_id=booking.id, actor=ALICE)
    rebooked = await env.book(requester=BOB, candidates=COURTS[:1])

    again = await uc.cancel_booking(env.engine, env.bookings, booking_id=booking.id, actor=ALICE)
    assert not again.changed
    assert (await env.availability.read("c1", "2024-06-03"))["10:00"].reservation_id == rebooked.id


@pytest.mark.asyncio
async def test_confirm_then_cancel_refunds() -> None:
    env = Env()
    booking = await env.book()

    confirmed, previous = await uc.confirm_payment(env.engine, env.bookings, booking_id=booking.id, payment_intent_id="pi_1")
    assert previous.status == BookingStatus.HOLDING
    assert confirmed.status == BookingStatus.CONFIRMED
    assert confirmed.payment_status == PaymentStatus.PAID
    assert confirmed.payment_intent_id == "pi_1"

    again, _ = await uc.confirm_payment(env.engine, env.bookings, booking_id=booking.id)
    assert again == confirmed

    cancellation = await uc.cancel_booking(env.engine, env.bookings, booking_id=booking.id, actor=ALICE)
    # still owed until the refund is recorded
    assert cancellation.booking.status == BookingStatus.CANCELLED
    assert cancellation.booking.payment_status == PaymentStatus.PAID

    refunded = await uc.record_refund(env.engine, env.bookings, booking_id=booking.id, refund_id="re_1")
    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert refunded.refund_id == "re_1"
    again_refunded = await uc.record_refund(env.engine, env.bookings, booking_id=booking.id, refund_id="re_2")
    assert again_refunded.refund_id == "re_1"


@pytest.mark.asyncio
async def test_confirmation_assigns_sequential_invoice_numbers() -> None:
    env = Env()
    first = await env.book(start_minutes=600)
    second = await env.book(start_minutes=720)

    confirmed, _ = await uc.confirm_payment(env.engine, env.bookings, booking_id=first.id)
    assert confirmed.invoice_number == "001000"
    again, _ = await uc.confirm_payment(env.engine, env.bookings, booking_id=first.id)
    assert again.invoice_number == "001000"

    other, _ = await uc.confirm_payment(env.engine, env.bookings, booking_id=second.id)
    assert other.invoice_number == "001001"


@pytest.mark.asyncio
async def test_concurrent_confirmations_never_share_an_invoice_number() -> None:
    env = Env()
    holds = [await env.book(start_minutes=480 + 60 * i) for i in range(5)]

    results = await asyncio.gather(
        *(uc.confirm_payment(env.engine, env.bookings, booking_id=hold.id) for hold in holds)
    )

    numbers = sorted(booking.invoice_number for booking, _ in results if booking.invoice_number)
    assert numbers == ["001000", "001001", "001002", "001003", "001004"]


@pytest.mark.asyncio
async def test_late_payment_on_cancelled_hold_gets_no_invoice() -> None:
    env = Env()
    booking = await env.book()
    await uc.cancel_booking(env.engine, env.bookings, booking_id=booking.id, actor=ALICE)

    owed, previous = await uc.confirm_payment(env.engine, env.bookings, booking_id=booking.id, payment_intent_id="pi_9")
    assert previous.payment_status == PaymentStatus.CANCELLED
    assert (owed.status, owed.payment_status) == (BookingStatus.CANCELLED, PaymentStatus.PAID)
    assert owed.payment_intent_id == "pi_9"
    assert owed.invoice_number is None


@pytest.mark.asyncio
async def test_cancel_hold_leaves_settled_booking_alone() -> None:
    env = Env()
    booking = await env.book()
    await uc.confirm_payment(env.engine, env.bookings, booking_id=booking.id)

    result = await uc.cancel_hold(env.engine, env.bookings, booking_id=booking.id, reason="payment_failed")

    assert not result.changed
    assert result.booking.status == BookingStatus.CONFIRMED
    assert not (await env.availability.read("c1", "2024-06-03"))["10:00"].is_available


@pytest.mark.asyncio
async def test_complete_booking() -> None:
    env = Env()
    booking = await env.book()
    with pytest.raises(UnauthorizedError):
        await uc.complete_booking(env.engine, env.bookings, booking_id=booking.id, actor=ALICE)
    with pytest.raises(InvalidTransitionError):
        await uc.complete_booking(env.engine, env.bookings, booking_id=booking.id, actor=ADMIN)

    await uc.confirm_payment(env.engine, env.bookings, booking_id=booking.id)
    completed = await uc.complete_booking(env.engine, env.bookings, booking_id=booking.id, actor=ADMIN)
    assert completed.status == BookingStatus.COMPLETED


@pytest.mark.asyncio
async def test_expire_stale_holds_frees_abandoned_bookings() -> None:
    env = Env()
    stale = await env.book(start_minutes=600)
    fresh = await env.book(requester=BOB, start_minutes=720)
    paid = await env.book(start_minutes=840)
    await uc.confirm_payment(env.engine, env.bookings, booking_id=paid.id)

    later = utc_now_naive() + timedelta(minutes=10)
    # the fresh hold's owner was active a minute before the sweep
    await env.bookings.store.upsert(
        "bookings", fresh.id, {"last_active": (later - timedelta(minutes=1)).isoformat()}, merge=True
    )

    expired = await uc.expire_stale_holds(env.engine, env.bookings, ttl_minutes=8, now=later)

    assert [c.booking.id for c in expired] == [stale.id]
    assert expired[0].booking.cancellation_reason == uc.HOLD_EXPIRED_REASON
    assert (await env.availability.read(stale.court_id, "2024-06-03"))["10:00"].is_available
    assert (await env.bookings.get(fresh.id)).status == BookingStatus.HOLDING  # type: ignore[union-attr]
    assert (await env.bookings.get(paid.id)).status == BookingStatus.CONFIRMED  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_touch_hold_rejects_settled_booking() -> None:
    env = Env()
    booking = await env.book()
    await uc.confirm_payment(env.engine, env.bookings, booking_id=booking.id)
    with pytest.raises(InvalidTransitionError):
        await uc.touch_hold(env.engine, env.bookings, booking_id=booking.id, actor=ALICE)
