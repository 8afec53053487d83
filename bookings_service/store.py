"""
Persistence boundary for bookings.

``BookingStore`` wraps one SQLAlchemy session. The request path gets one per
HTTP request through :func:`get_store`; the reminder scheduler opens a fresh
one for every tick.
"""
import functools
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends
from sqlalchemy import update
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from . import models
from .database import get_db
from .errors import NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


def _store_call(func):
    """Translate connectivity failures into ``StoreUnavailable``."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except _UNAVAILABLE_ERRORS as exc:
            logger.error("Booking store call %s failed: %s", func.__name__, exc)
            self.db.rollback()
            raise StoreUnavailable() from exc

    return wrapper


class BookingStore:
    """
    Single source of truth for booking state.

    Parameters
    ----------
    db : Session
        Session used for every read and write of this store instance.
    """

    def __init__(self, db: Session):
        self.db = db

    # ---------- reads ----------

    @_store_call
    def get_booking(self, booking_id: int) -> models.Booking:
        booking = self.db.get(models.Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    @_store_call
    def get_room(self, room_id: int) -> Optional[models.Room]:
        return self.db.get(models.Room, room_id)

    @_store_call
    def get_user(self, user_id: int) -> Optional[models.User]:
        return self.db.get(models.User, user_id)

    @_store_call
    def list_active_rooms(self) -> List[models.Room]:
        return (
            self.db.query(models.Room)
            .filter(models.Room.is_active.is_(True))
            .order_by(models.Room.id)
            .all()
        )

    @_store_call
    def list_confirmed_bookings_for_room(
        self,
        room_id: int,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[models.Booking]:
        """
        Return confirmed bookings of a room.

        When a window is given the result is pre-filtered with inclusive
        bounds, so it is a superset of the bookings that actually overlap
        the window. Callers decide overlap with ``overlaps``.
        """
        q = (
            self.db.query(models.Booking)
            .filter(models.Booking.room_id == room_id)
            .filter(models.Booking.status == models.BookingStatus.CONFIRMED)
        )
        if window_start is not None:
            q = q.filter(models.Booking.end_time >= window_start)
        if window_end is not None:
            q = q.filter(models.Booking.start_time <= window_end)
        return q.order_by(models.Booking.start_time).all()

    @_store_call
    def list_bookings_starting_in_window(
        self, window_start: datetime, window_end: datetime
    ) -> List[models.Booking]:
        """Non-cancelled bookings whose start lies in ``[window_start, window_end]``."""
        return (
            self.db.query(models.Booking)
            .filter(models.Booking.status != models.BookingStatus.CANCELLED)
            .filter(models.Booking.start_time >= window_start)
            .filter(models.Booking.start_time <= window_end)
            .order_by(models.Booking.start_time)
            .all()
        )

    @_store_call
    def list_bookings(
        self, room_id: Optional[int] = None, user_id: Optional[int] = None
    ) -> List[models.Booking]:
        q = self.db.query(models.Booking)
        if room_id is not None:
            q = q.filter(models.Booking.room_id == room_id)
        if user_id is not None:
            q = q.filter(models.Booking.user_id == user_id)
        return q.order_by(models.Booking.start_time.desc()).all()

    # ---------- writes ----------

    @_store_call
    def create_booking(self, data: Dict[str, Any]) -> models.Booking:
        """
        Persist a new booking.

        The store does not check for conflicts; the booking flow does that
        immediately before calling this method.
        """
        booking = models.Booking(**data)
        self.db.add(booking)
        self.db.commit()
        self.db.refresh(booking)
        return booking

    @_store_call
    def update_booking(self, booking_id: int, patch: Dict[str, Any]) -> models.Booking:
        booking = self.db.get(models.Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        for field, value in patch.items():
            setattr(booking, field, value)
        self.db.add(booking)
        self.db.commit()
        self.db.refresh(booking)
        return booking

    @_store_call
    def mark_reminder_sent(self, booking_id: int) -> None:
        """Flag the reminder of a booking as delivered. Repeated calls are harmless."""
        self.db.execute(
            update(models.Booking)
            .where(models.Booking.id == booking_id)
            .values(reminder_sent=True)
        )
        self.db.commit()


def get_store(db: Session = Depends(get_db)) -> BookingStore:
    """FastAPI dependency returning a store bound to the request session."""
    return BookingStore(db)
