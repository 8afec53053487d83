"""
Booking create / edit / cancel flow.

Every write re-runs the conflict check immediately before committing, while
holding a per-room lock, so two requests served by this process cannot both
claim the same slot. Other processes writing to the same database are not
covered by the lock.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict

from common.cache import delete_prefix

from . import models, schemas
from .availability import AVAILABILITY_CACHE_PREFIX
from .conflicts import has_conflict
from .errors import Conflict, Forbidden, InvalidInterval, NotFound
from .store import BookingStore

logger = logging.getLogger(__name__)

# Fields a partial update may explicitly clear by sending null.
NULLABLE_FIELDS = {"description", "attachment_url", "attachment_name"}

_room_locks: Dict[int, threading.Lock] = {}
_room_locks_guard = threading.Lock()


@contextmanager
def _room_lock(room_id: int):
    with _room_locks_guard:
        lock = _room_locks.setdefault(room_id, threading.Lock())
    with lock:
        yield


def ensure_interval(start_time: datetime, end_time: datetime) -> None:
    """
    Validate that a booking time range is well-formed.

    Raises
    ------
    InvalidInterval
        If end_time is not strictly after start_time.
    """
    if end_time <= start_time:
        raise InvalidInterval()


def require_bookable_room(store: BookingStore, room_id: int) -> models.Room:
    room = store.get_room(room_id)
    if room is None or not room.is_active:
        raise NotFound("Room not found")
    return room


def _ensure_can_modify(booking: models.Booking, claims: Dict[str, Any]) -> None:
    if claims["role"] == "admin":
        return
    if booking.user_id != claims["user_id"]:
        raise Forbidden("Not allowed to modify this booking")


def _ensure_free(
    store: BookingStore,
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_booking_id=None,
) -> None:
    if has_conflict(store, room_id, start_time, end_time, exclude_booking_id):
        raise Conflict()


def create_booking(
    store: BookingStore,
    booking_in: schemas.BookingCreate,
    user_id: int,
) -> models.Booking:
    """
    Create a confirmed booking owned by ``user_id``.

    The slot is checked twice: once up front so an obvious clash is reported
    without waiting on the room lock, and again under the lock right before
    the insert, which is the check that decides.

    Raises
    ------
    InvalidInterval
        If the time range is empty or inverted.
    NotFound
        If the room does not exist or is inactive.
    Conflict
        If a confirmed booking of the room overlaps the interval.
    """
    ensure_interval(booking_in.start_time, booking_in.end_time)
    require_bookable_room(store, booking_in.room_id)
    _ensure_free(store, booking_in.room_id, booking_in.start_time, booking_in.end_time)

    data = booking_in.model_dump()
    data.update(
        user_id=user_id,
        status=models.BookingStatus.CONFIRMED,
        reminder_sent=False,
    )
    with _room_lock(booking_in.room_id):
        _ensure_free(store, booking_in.room_id, booking_in.start_time, booking_in.end_time)
        booking = store.create_booking(data)

    delete_prefix(AVAILABILITY_CACHE_PREFIX)
    logger.info(
        "Booking %s created: room=%s user=%s %s..%s",
        booking.id,
        booking.room_id,
        user_id,
        booking.start_time.isoformat(),
        booking.end_time.isoformat(),
    )
    return booking


def edit_booking(
    store: BookingStore,
    booking_id: int,
    update_data: schemas.BookingUpdate,
    claims: Dict[str, Any],
) -> models.Booking:
    """
    Apply a partial update to a booking and re-validate its slot.

    The booking's own current interval is excluded from the conflict check,
    which runs before and again under the room lock as in ``create_booking``.
    Changing the time does not re-arm a reminder that was already sent.
    """
    booking = store.get_booking(booking_id)
    _ensure_can_modify(booking, claims)
    if booking.status == models.BookingStatus.CANCELLED:
        raise Conflict("Cancelled bookings cannot be edited")

    patch = {
        field: value
        for field, value in update_data.model_dump(exclude_unset=True).items()
        if value is not None or field in NULLABLE_FIELDS
    }

    new_room_id = patch.get("room_id", booking.room_id)
    new_start_time = patch.get("start_time", booking.start_time)
    new_end_time = patch.get("end_time", booking.end_time)

    ensure_interval(new_start_time, new_end_time)
    if new_room_id != booking.room_id:
        require_bookable_room(store, new_room_id)

    blocks_room = booking.status == models.BookingStatus.CONFIRMED
    if blocks_room:
        _ensure_free(store, new_room_id, new_start_time, new_end_time, booking.id)

    with _room_lock(new_room_id):
        if blocks_room:
            _ensure_free(store, new_room_id, new_start_time, new_end_time, booking.id)
        booking = store.update_booking(booking.id, patch)

    delete_prefix(AVAILABILITY_CACHE_PREFIX)
    logger.info("Booking %s updated: fields=%s", booking.id, sorted(patch))
    return booking


def cancel_booking(
    store: BookingStore,
    booking_id: int,
    claims: Dict[str, Any],
) -> models.Booking:
    """Soft-cancel a booking. Cancelling twice is a no-op."""
    booking = store.get_booking(booking_id)
    _ensure_can_modify(booking, claims)
    if booking.status == models.BookingStatus.CANCELLED:
        return booking

    booking = store.update_booking(booking.id, {"status": models.BookingStatus.CANCELLED})
    delete_prefix(AVAILABILITY_CACHE_PREFIX)
    logger.info("Booking %s cancelled by user %s", booking.id, claims["user_id"])
    return booking
