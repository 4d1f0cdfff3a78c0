class BookingError(Exception):
    """Base class for domain errors raised by the booking core."""


class InvalidRangeError(BookingError):
    pass


class InvalidDateFormatError(BookingError):
    pass


class StoreUnavailableError(BookingError):
    """The backing store failed after its own retries (or timed out)."""


class UnauthorizedError(BookingError):
    pass


class BookingNotFoundError(BookingError):
    pass


class CourtNotFoundError(BookingError):
    pass


class InvalidTransitionError(BookingError):
    pass


class PaymentGatewayError(BookingError):
    pass
