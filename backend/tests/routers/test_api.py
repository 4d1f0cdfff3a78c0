from decimal import Decimal
from typing import Any, Mapping, Optional

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from venue_booking.config import Settings
from venue_booking.domain.entities import Court, RateTable
from venue_booking.domain.errors import PaymentGatewayError, StoreUnavailableError
from venue_booking.domain.repositories import PaymentIntent
from venue_booking.infrastructure.document_store import InMemoryDocumentStore
from venue_booking.infrastructure.repositories import COURTS_COLLECTION
from venue_booking.main import create_app
from venue_booking.utils.auth import create_access_token

SECRET = "testsecret"
DATE = "2024-06-01"


class FakeGateway:
    def __init__(self) -> None:
        self.refunds: list[str] = []
        self.fail_refunds = False
        self.remote_status = "requires_payment_method"

    async def create_payment_intent(self, *, amount: Decimal, currency: str, metadata: Mapping[str, str]) -> PaymentIntent:
        return PaymentIntent(id="pi_1", client_secret="pi_1_secret", status="requires_payment_method", amount=amount, currency=currency)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        return PaymentIntent(id=payment_intent_id, client_secret=None, status=self.remote_status, amount=Decimal("40.00"), currency="eur")

    async def refund(self, payment_intent_id: str, *, idempotency_key: Optional[str] = None) -> str:
        if self.fail_refunds:
            raise PaymentGatewayError("card network down")
        self.refunds.append(payment_intent_id)
        return "re_1"


class UnavailableStore(InMemoryDocumentStore):
    async def run_transaction(self, fn: Any) -> Any:
        raise StoreUnavailableError("store transaction failed")


def _auth(user_id: str, *, admin: bool = False) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id, secret=SECRET, is_admin=admin)}"}


async def _app(store: InMemoryDocumentStore | None = None, gateway: FakeGateway | None = None) -> FastAPI:
    store = store or InMemoryDocumentStore(max_retries=10)
    court = Court(id="c1", name="Court 1", venue_id="v1", rate_table=RateTable(base_hourly_rate=Decimal("20")))
    await store.upsert(COURTS_COLLECTION, court.id, court.model_dump(mode="json"))
    settings = Settings(database_url="memory://", auth_secret=SECRET)
    return create_app(settings, store=store, gateway=gateway or FakeGateway())


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _booking_request(start_minutes: int = 600) -> dict[str, Any]:
    return {"venue_id": "v1", "date": DATE, "start_minutes": start_minutes, "duration_minutes": 120}


@pytest.mark.asyncio
async def test_health() -> None:
    async with _client(await _app()) as client:
        resp = await client.get("/health")
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_booking_flow_and_masked_availability() -> None:
    async with _client(await _app()) as client:
        resp = await client.post("/bookings", json=_booking_request(), headers=_auth("alice"))
        assert resp.status_code == 201
        booking = resp.json()
        assert booking["court_id"] == "c1"
        assert booking["status"] == "holding"
        assert Decimal(booking["price"]) == Decimal("40.00")

        avail = await client.get("/courts/c1/availability", params={"date": DATE})
        assert avail.status_code == 200
        slots = avail.json()["slots"]
        assert slots["10:00"] == {"is_available": False}
        assert slots["12:00"] == {"is_available": True}

        detail = await client.get("/admin/courts/c1/availability", params={"date": DATE}, headers=_auth("root", admin=True))
        assert detail.json()["slots"]["10:00"]["reserved_by"] == "alice"

        conflict = await client.post("/bookings", json=_booking_request(660), headers=_auth("bob"))
        assert conflict.status_code == 409
        assert conflict.json()["conflicts"] == {"c1": ["11:00"]}

        other = await client.get(f"/bookings/{booking['booking_id']}", headers=_auth("bob"))
        assert other.status_code == 403

        mine = await client.get("/me/bookings", headers=_auth("alice"))
        assert [b["booking_id"] for b in mine.json()] == [booking["booking_id"]]

        cancelled = await client.post(f"/bookings/{booking['booking_id']}/cancel", json={"reason": "rain"}, headers=_auth("alice"))
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        retry = await client.post("/bookings", json=_booking_request(660), headers=_auth("bob"))
        assert retry.status_code == 201


@pytest.mark.asyncio
async def test_requests_need_a_token() -> None:
    async with _client(await _app()) as client:
        resp = await client.post("/bookings", json=_booking_request())
        assert resp.status_code == 401
        resp = await client.post("/bookings", json=_booking_request(), headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401


@pytest.mark.asyncio
async def test_bad_input_maps_to_400() -> None:
    async with _client(await _app()) as client:
        bad_date = await client.get("/courts/c1/availability", params={"date": "01-06-2024"})
        assert bad_date.status_code == 400
        closed = await client.post("/bookings", json=_booking_request(21 * 60), headers=_auth("alice"))
        assert closed.status_code == 400


@pytest.mark.asyncio
async def test_unknown_booking_is_404() -> None:
    async with _client(await _app()) as client:
        resp = await client.get("/bookings/missing", headers=_auth("alice"))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_admin_block_and_release() -> None:
    async with _client(await _app()) as client:
        payload = {"date": DATE, "start_time": "10:00", "end_time": "12:00"}
        forbidden = await client.post("/admin/courts/c1/block", json=payload, headers=_auth("alice"))
        assert forbidden.status_code == 403

        blocked = await client.post("/admin/courts/c1/block", json=payload, headers=_auth("root", admin=True))
        assert blocked.status_code == 200
        assert blocked.json()["slot_keys"] == ["10:00", "11:00"]

        again = await client.post("/admin/courts/c1/block", json=payload, headers=_auth("root", admin=True))
        assert again.status_code == 409

        booking = await client.post("/bookings", json=_booking_request(), headers=_auth("alice"))
        assert booking.status_code == 409

        released = await client.post("/admin/courts/c1/release", json=payload, headers=_auth("root", admin=True))
        assert released.json()["slot_keys"] == ["10:00", "11:00"]


@pytest.mark.asyncio
async def test_payment_confirmation_and_refund_on_cancel() -> None:
    gateway = FakeGateway()
    async with _client(await _app(gateway=gateway)) as client:
        booking = (await client.post("/bookings", json=_booking_request(), headers=_auth("alice"))).json()
        booking_id = booking["booking_id"]

        intent = await client.post(f"/bookings/{booking_id}/payment-intent", headers=_auth("alice"))
        assert intent.status_code == 200
        assert intent.json()["client_secret"] == "pi_1_secret"

        not_admin = await client.post(
            "/payments/status", json={"booking_id": booking_id, "status": "succeeded"}, headers=_auth("alice")
        )
        assert not_admin.status_code == 403

        confirmed = await client.post(
            "/payments/status",
            json={"booking_id": booking_id, "status": "succeeded", "payment_intent_id": "pi_1"},
            headers=_auth("payments-relay", admin=True),
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "confirmed"
        assert confirmed.json()["payment_status"] == "paid"
        assert confirmed.json()["invoice_number"] == "001000"

        heartbeat = await client.post(f"/bookings/{booking_id}/heartbeat", headers=_auth("alice"))
        assert heartbeat.status_code == 409

        cancelled = await client.post(f"/bookings/{booking_id}/cancel", json={}, headers=_auth("alice"))
        assert cancelled.json()["payment_status"] == "refunded"
    assert gateway.refunds == ["pi_1"]


@pytest.mark.asyncio
async def test_complete_and_expire_endpoints() -> None:
    async with _client(await _app()) as client:
        booking_id = (await client.post("/bookings", json=_booking_request(), headers=_auth("alice"))).json()["booking_id"]

        too_early = await client.post(f"/admin/bookings/{booking_id}/complete", headers=_auth("root", admin=True))
        assert too_early.status_code == 409

        expired = await client.post("/admin/holds/expire", headers=_auth("root", admin=True))
        assert expired.status_code == 200
        assert expired.json() == {"expired_booking_ids": []}


@pytest.mark.asyncio
async def test_store_outage_maps_to_503() -> None:
    async with _client(await _app(store=UnavailableStore())) as client:
        resp = await client.post("/bookings", json=_booking_request(), headers=_auth("alice"))
    assert resp.status_code == 503
    assert "retry" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_response_carries_request_id() -> None:
    async with _client(await _app()) as client:
        resp = await client.get("/health", headers={"X-Request-ID": "req-42"})
    assert resp.headers["X-Request-ID"] == "req-42"


@pytest.mark.asyncio
async def test_unknown_court_availability_is_404() -> None:
    async with _client(await _app()) as client:
        resp = await client.get("/courts/nope/availability", params={"date": DATE})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_failed_refund_is_retried_by_cancelling_again() -> None:
    gateway = FakeGateway()
    async with _client(await _app(gateway=gateway)) as client:
        booking_id = (await client.post("/bookings", json=_booking_request(), headers=_auth("alice"))).json()["booking_id"]
        await client.post(f"/bookings/{booking_id}/payment-intent", headers=_auth("alice"))
        await client.post(
            "/payments/status",
            json={"booking_id": booking_id, "status": "succeeded", "payment_intent_id": "pi_1"},
            headers=_auth("payments-relay", admin=True),
        )

        gateway.fail_refunds = True
        failed = await client.post(f"/bookings/{booking_id}/cancel", json={}, headers=_auth("alice"))
        assert failed.status_code == 502
        owed = (await client.get(f"/bookings/{booking_id}", headers=_auth("alice"))).json()
        assert (owed["status"], owed["payment_status"]) == ("cancelled", "paid")

        gateway.fail_refunds = False
        retried = await client.post(f"/bookings/{booking_id}/cancel", json={}, headers=_auth("alice"))
        assert retried.status_code == 200
        assert retried.json()["payment_status"] == "refunded"
    assert gateway.refunds == ["pi_1"]


@pytest.mark.asyncio
async def test_admin_release_of_booked_slots_is_refused() -> None:
    async with _client(await _app()) as client:
        booking_id = (await client.post("/bookings", json=_booking_request(), headers=_auth("alice"))).json()["booking_id"]
        payload = {"date": DATE, "start_time": "10:00", "end_time": "12:00"}

        refused = await client.post("/admin/courts/c1/release", json=payload, headers=_auth("root", admin=True))
        assert refused.status_code == 409

        slots = (await client.get("/courts/c1/availability", params={"date": DATE})).json()["slots"]
        assert slots["10:00"] == {"is_available": False}
        booking = (await client.get(f"/bookings/{booking_id}", headers=_auth("alice"))).json()
        assert booking["status"] == "holding"


@pytest.mark.asyncio
async def test_recover_endpoint_confirms_missed_payment() -> None:
    gateway = FakeGateway()
    async with _client(await _app(gateway=gateway)) as client:
        booking_id = (await client.post("/bookings", json=_booking_request(), headers=_auth("alice"))).json()["booking_id"]
        await client.post(f"/bookings/{booking_id}/payment-intent", headers=_auth("alice"))

        forbidden = await client.post(f"/admin/bookings/{booking_id}/recover", headers=_auth("alice"))
        assert forbidden.status_code == 403

        gateway.remote_status = "succeeded"
        recovered = await client.post(f"/admin/bookings/{booking_id}/recover", headers=_auth("root", admin=True))
        assert recovered.status_code == 200
        assert recovered.json()["status"] == "confirmed"

        missing = await client.post("/admin/bookings/missing/recover", headers=_auth("root", admin=True))
        assert missing.status_code == 404
