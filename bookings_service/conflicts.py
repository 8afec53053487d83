from datetime import datetime, timedelta
from typing import Optional

from .overlap import overlaps
from .store import BookingStore

# Slack added around the candidate interval when pre-filtering in the database.
PREFILTER_MARGIN = timedelta(days=1)


def has_conflict(
    store: BookingStore,
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_booking_id: Optional[int] = None,
) -> bool:
    """
    Check if any confirmed booking on the same room overlaps the interval.

    Pending and cancelled bookings never block a room.

    Parameters
    ----------
    store : BookingStore
        Store to read bookings from.
    room_id : int
        Room identifier.
    start_time : datetime
        Proposed start time (naive UTC).
    end_time : datetime
        Proposed end time (naive UTC).
    exclude_booking_id : Optional[int]
        If provided, ignore this booking (used when editing it in place).

    Returns
    -------
    bool
        True if there is at least one conflicting booking, False otherwise.
    """
    candidates = store.list_confirmed_bookings_for_room(
        room_id,
        window_start=start_time - PREFILTER_MARGIN,
        window_end=end_time + PREFILTER_MARGIN,
    )
    for booking in candidates:
        if exclude_booking_id is not None and booking.id == exclude_booking_id:
            continue
        if overlaps(start_time, end_time, booking.start_time, booking.end_time):
            return True
    return False
