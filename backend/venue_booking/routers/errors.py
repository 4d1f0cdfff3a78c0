from fastapi import HTTPException, status

from ..domain.errors import (
    BookingError,
    BookingNotFoundError,
    CourtNotFoundError,
    InvalidDateFormatError,
    InvalidRangeError,
    InvalidTransitionError,
    PaymentGatewayError,
    UnauthorizedError,
)

_STATUS_BY_ERROR: list[tuple[type[BookingError], int, str]] = [
    (InvalidRangeError, status.HTTP_400_BAD_REQUEST, "invalid time range"),
    (InvalidDateFormatError, status.HTTP_400_BAD_REQUEST, "invalid date"),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN, "not allowed"),
    (BookingNotFoundError, status.HTTP_404_NOT_FOUND, "booking not found"),
    (CourtNotFoundError, status.HTTP_404_NOT_FOUND, "court not found"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "booking state does not allow this"),
    (PaymentGatewayError, status.HTTP_502_BAD_GATEWAY, "payment provider error"),
]


def to_http_exception(exc: BookingError) -> HTTPException:
    """Map a caller-facing domain error to an HTTP error. StoreUnavailableError is handled app-wide."""
    for error_type, status_code, detail in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=f"{detail}: {exc}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")


CALLER_ERRORS: tuple[type[BookingError], ...] = tuple(error_type for error_type, _, _ in _STATUS_BY_ERROR)
