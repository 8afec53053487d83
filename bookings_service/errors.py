"""
Error taxonomy of the booking engine.

Every error carries the HTTP status the API layer answers with, so the
exception handlers in ``main`` can surface each kind distinctly.
"""
from fastapi import status


class BookingError(Exception):
    """Base class for all booking engine errors."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Booking request rejected"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidInterval(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "end_time must be after start_time"


class Conflict(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Room is already booked for this time range"


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class Forbidden(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not allowed to modify this booking"


class StoreUnavailable(BookingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Booking store unavailable"


class DispatchFailure(BookingError):
    """Notification transport error. Only raised inside the reminder path."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Notification could not be delivered"
