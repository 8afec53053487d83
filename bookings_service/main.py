import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from . import availability, schemas, service
from .auth import get_current_user_claims, require_booking_writer, require_roles
from .conflicts import has_conflict
from .database import SessionLocal, init_db
from .errors import BookingError, Forbidden
from .notifications import SmtpNotificationDispatcher
from .reminders import REMINDERS_ENABLED, ReminderScheduler
from .schemas import to_naive_utc
from .store import BookingStore, get_store

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("bookings_service")

init_db()

SERVICE_NAME = "bookings"

reminder_scheduler = ReminderScheduler(
    session_factory=SessionLocal,
    dispatcher=SmtpNotificationDispatcher(),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if REMINDERS_ENABLED:
        reminder_scheduler.start()
    else:
        logger.info("Reminder scheduler not started (REMINDERS_ENABLED is off)")
    yield
    reminder_scheduler.stop()


app = FastAPI(title="Bookings Service", version="1.0.0", lifespan=lifespan)
router_v1 = APIRouter(prefix="/api/v1")


def _error_body(request: Request, status_code: int, error: str, detail) -> Dict:
    return {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "error": error,
        "detail": detail,
    }


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.kind, exc.detail),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, "HTTPException", exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, 500, "InternalError", "Internal server error"),
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Bookings service.

    Returns
    -------
    dict
        Service name, status and whether the reminder scheduler is running.
    """
    return {
        "service": SERVICE_NAME,
        "status": "running",
        "reminder_scheduler": reminder_scheduler.running,
    }


admin_facility_or_auditor = require_roles(
    "admin",
    "facility_manager",
    "auditor",
    "service_account",
)

availability_roles = require_roles(
    "admin",
    "regular",
    "facility_manager",
    "auditor",
    "service_account",
)

PRIVILEGED_READ_ROLES = ("admin", "facility_manager", "auditor", "service_account")


# ---------- Availability across rooms ----------


@router_v1.get("/bookings/availability", response_model=List[schemas.RoomAvailability])
def check_availability(
    start_time: datetime,
    end_time: datetime,
    store: BookingStore = Depends(get_store),
    _: Dict = Depends(availability_roles),
):
    """
    Report which active rooms are free during a time range.

    Parameters
    ----------
    start_time : datetime
        Start of the desired interval (ISO 8601).
    end_time : datetime
        End of the desired interval (ISO 8601).

    Returns
    -------
    List[RoomAvailability]
        One entry per active room with ``available`` and, when booked, a reason.

    Raises
    ------
    InvalidInterval
        If end_time is not after start_time.
    """
    start_time, end_time = to_naive_utc(start_time), to_naive_utc(end_time)
    service.ensure_interval(start_time, end_time)
    return availability.get_availability(store, start_time, end_time, use_cache=True)


# ---------- Conflict probe for a single room ----------


@router_v1.post("/bookings/check-conflict", response_model=schemas.ConflictCheckResponse)
def check_conflict(
    body: schemas.ConflictCheckRequest,
    store: BookingStore = Depends(get_store),
    _: Dict = Depends(get_current_user_claims),
):
    """
    Tell whether a room already has a confirmed booking in the interval.

    ``exclude_booking_id`` lets the edit form ignore the booking being edited.
    """
    service.ensure_interval(body.start_time, body.end_time)
    service.require_bookable_room(store, body.room_id)
    busy = has_conflict(
        store, body.room_id, body.start_time, body.end_time, body.exclude_booking_id
    )
    return {"room_id": body.room_id, "has_conflict": busy}


# ---------- Create booking ----------


@router_v1.post(
    "/bookings",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    booking_in: schemas.BookingCreate,
    store: BookingStore = Depends(get_store),
    claims: Dict = Depends(require_booking_writer),
):
    """
    Create a new confirmed booking for the authenticated user.

    Access
    ------
    - Denied for roles: auditor, moderator, service_account.

    Raises
    ------
    InvalidInterval, NotFound, Conflict
        Surfaced as 400, 404 and 409 respectively.
    """
    return service.create_booking(store, booking_in, claims["user_id"])


# ---------- My bookings (current user) ----------


@router_v1.get("/bookings/me", response_model=List[schemas.BookingRead])
def list_my_bookings(
    store: BookingStore = Depends(get_store),
    claims: Dict = Depends(get_current_user_claims),
):
    """List bookings owned by the caller, newest start first."""
    return store.list_bookings(user_id=claims["user_id"])


# ---------- Admin / facility / auditor / service: list all bookings ----------


@router_v1.get("/bookings", response_model=List[schemas.BookingRead])
def list_all_bookings(
    room_id: Optional[int] = Query(default=None, ge=1),
    user_id: Optional[int] = Query(default=None, ge=1),
    store: BookingStore = Depends(get_store),
    _: Dict = Depends(admin_facility_or_auditor),
):
    """
    View all bookings with optional filters.

    Parameters
    ----------
    room_id : Optional[int]
        If provided, filter bookings for a specific room.
    user_id : Optional[int]
        If provided, filter bookings for a specific user.
    """
    return store.list_bookings(room_id=room_id, user_id=user_id)


@router_v1.get("/bookings/{booking_id}", response_model=schemas.BookingRead)
def get_booking(
    booking_id: int,
    store: BookingStore = Depends(get_store),
    claims: Dict = Depends(get_current_user_claims),
):
    """Return one booking to its owner or to a privileged role."""
    booking = store.get_booking(booking_id)
    if claims["role"] not in PRIVILEGED_READ_ROLES and booking.user_id != claims["user_id"]:
        raise Forbidden("Access denied")
    return booking


# ---------- Update booking ----------


@router_v1.put("/bookings/{booking_id}", response_model=schemas.BookingRead)
def update_booking(
    booking_id: int,
    update_data: schemas.BookingUpdate,
    store: BookingStore = Depends(get_store),
    claims: Dict = Depends(require_booking_writer),
):
    """
    Update an existing booking's room, time, title or reminder settings.

    Access
    ------
    - Owner of the booking, or admin for any booking.

    Behavior
    --------
    - Applies only the fields provided in BookingUpdate.
    - Re-validates the final time range.
    - Ensures no conflicts with other confirmed bookings, ignoring itself.
    """
    return service.edit_booking(store, booking_id, update_data, claims)


# ---------- Cancel booking (soft) ----------


@router_v1.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def cancel_booking(
    booking_id: int,
    store: BookingStore = Depends(get_store),
    claims: Dict = Depends(require_booking_writer),
):
    """
    Cancel (soft-delete) an existing booking.

    The record stays with status ``cancelled`` and immediately stops blocking
    the room and receiving reminders.
    """
    service.cancel_booking(store, booking_id, claims)
    return None


app.include_router(router_v1)
