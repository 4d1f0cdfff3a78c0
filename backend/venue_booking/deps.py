from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from .config import Settings
from .database import build_document_store
from .domain.entities import Principal
from .domain.repositories import DocumentStore, PaymentGateway
from .infrastructure.availability import AvailabilityStore, OperatingHours
from .infrastructure.events import AvailabilityEvents
from .infrastructure.payments import StripePaymentGateway
from .infrastructure.repositories import DocumentBookingRepository, DocumentCourtCatalog
from .usecases.assignment import CourtAssignmentEngine
from .usecases.reservations import ReservationEngine
from .utils.auth import decode_access_token


@dataclass
class Services:
    """Explicitly wired core components shared by the request handlers of one app."""

    settings: Settings
    store: DocumentStore
    availability: AvailabilityStore
    events: AvailabilityEvents
    reservations: ReservationEngine
    assigner: CourtAssignmentEngine
    bookings: DocumentBookingRepository
    catalog: DocumentCourtCatalog
    gateway: PaymentGateway


def build_services(
    settings: Settings,
    *,
    store: Optional[DocumentStore] = None,
    gateway: Optional[PaymentGateway] = None,
) -> Services:
    store = store if store is not None else build_document_store(settings)
    hours = OperatingHours(
        opening_time=settings.opening_time,
        closing_time=settings.closing_time,
        granularity=settings.slot_granularity_minutes,
    )
    availability = AvailabilityStore(store, hours)
    events = AvailabilityEvents()
    reservations = ReservationEngine(
        availability,
        timeout_seconds=settings.reserve_timeout_seconds,
        events=events,
    )
    return Services(
        settings=settings,
        store=store,
        availability=availability,
        events=events,
        reservations=reservations,
        assigner=CourtAssignmentEngine(reservations),
        bookings=DocumentBookingRepository(store),
        catalog=DocumentCourtCatalog(store),
        gateway=gateway if gateway is not None else StripePaymentGateway(settings.stripe_api_key),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_principal(
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Principal:
    if authorization is None or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bearer token required")
    token = authorization.removeprefix("Bearer ").strip()
    try:
        return decode_access_token(
            token,
            secret=services.settings.auth_secret,
            algorithms=[services.settings.auth_algorithm],
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


async def get_admin_principal(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator required")
    return principal
