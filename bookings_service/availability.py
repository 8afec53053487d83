"""
Per-room availability for a requested interval.

The result is a best-effort snapshot: nothing is locked, so a room reported
free can be taken before the user submits. The booking flow re-checks at
write time.
"""
import logging
from datetime import datetime
from typing import List

from common.cache import get_cached_json, set_cached_json

from . import models, schemas
from .conflicts import has_conflict
from .store import BookingStore

logger = logging.getLogger(__name__)

AVAILABILITY_CONFLICT_REASON = "already booked for this time slot"
AVAILABILITY_CACHE_PREFIX = "rooms:availability:"
AVAILABILITY_CACHE_TTL_SECONDS = 60


def _room_summary(room: models.Room) -> schemas.RoomSummary:
    return schemas.RoomSummary(
        id=room.id,
        name=room.name,
        capacity=room.capacity,
        equipment=room.equipment_tags,
        location=room.location,
    )


def get_availability(
    store: BookingStore,
    start_time: datetime,
    end_time: datetime,
    use_cache: bool = False,
) -> List[schemas.RoomAvailability]:
    """
    Report, for every active room, whether it is free during the interval.

    Parameters
    ----------
    store : BookingStore
        Store to read rooms and bookings from.
    start_time, end_time : datetime
        Requested interval (naive UTC, already validated).
    use_cache : bool
        Serve from / populate the Redis snapshot cache when it is configured.

    Returns
    -------
    List[RoomAvailability]
        One entry per active room. ``reason`` is set only when unavailable.
    """
    cache_key = f"{AVAILABILITY_CACHE_PREFIX}{start_time.isoformat()}:{end_time.isoformat()}"
    if use_cache:
        cached = get_cached_json(cache_key)
        if cached is not None:
            return [schemas.RoomAvailability.model_validate(item) for item in cached]

    results: List[schemas.RoomAvailability] = []
    for room in store.list_active_rooms():
        busy = has_conflict(store, room.id, start_time, end_time)
        results.append(
            schemas.RoomAvailability(
                room=_room_summary(room),
                available=not busy,
                reason=AVAILABILITY_CONFLICT_REASON if busy else None,
            )
        )

    logger.debug(
        "Availability %s..%s: %d/%d rooms free",
        start_time.isoformat(),
        end_time.isoformat(),
        sum(1 for r in results if r.available),
        len(results),
    )

    if use_cache:
        set_cached_json(
            cache_key,
            [r.model_dump() for r in results],
            ttl_seconds=AVAILABILITY_CACHE_TTL_SECONDS,
        )
    return results
