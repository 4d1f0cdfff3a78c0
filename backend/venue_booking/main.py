import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .database import init_models
from .deps import build_services
from .domain.errors import StoreUnavailableError
from .domain.repositories import DocumentStore, PaymentGateway
from .infrastructure.document_store import SqlAlchemyDocumentStore
from .routers import bookings, payments, slots
from .utils.request_id import REQUEST_ID_HEADER, resolve_request_id, set_request_id

logger = logging.getLogger(__name__)


async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
    set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        set_request_id(None)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def store_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "booking service is busy, please retry"},
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[DocumentStore] = None,
    gateway: Optional[PaymentGateway] = None,
) -> FastAPI:
    settings = settings or get_settings()
    services = build_services(settings, store=store, gateway=gateway)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine = services.store.engine if isinstance(services.store, SqlAlchemyDocumentStore) else None
        if engine is not None:
            await init_models(engine)
        try:
            yield
        finally:
            if engine is not None:
                await engine.dispose()

    app = FastAPI(title="Venue Booking API", lifespan=lifespan)
    app.state.services = services
    app.middleware("http")(request_id_middleware)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(slots.router)
    app.include_router(bookings.router)
    app.include_router(payments.router)
    return app


app = create_app()
