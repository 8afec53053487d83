from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import DEFAULT_REMINDER_MINUTES, BookingStatus

MAX_REMINDER_MINUTES = 7 * 24 * 60


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise an instant to naive UTC, the representation used in storage.

    Naive input is taken to be UTC already.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class BookingBase(BaseModel):
    """
    Base schema for booking room, time and reminder information.

    Shared fields used across booking create and read operations.
    """
    room_id: int = Field(..., ge=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    start_time: datetime = Field(...)
    end_time: datetime = Field(...)
    participants: List[str] = Field(default_factory=list)
    remind_me: bool = False
    reminder_minutes: int = Field(default=DEFAULT_REMINDER_MINUTES, ge=1, le=MAX_REMINDER_MINUTES)
    attachment_url: Optional[str] = Field(default=None, max_length=500)
    attachment_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalise_instant(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class BookingCreate(BookingBase):
    """
    Schema for creating a new booking.

    The owner is taken from the caller's token, never from the body.
    """
    pass


class BookingUpdate(BaseModel):
    """
    Schema for partially updating an existing booking.

    All fields are optional; only provided values will be applied.
    Cancellation goes through the DELETE endpoint instead of a status field.
    """
    room_id: Optional[int] = Field(default=None, ge=1)
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    participants: Optional[List[str]] = None
    remind_me: Optional[bool] = None
    reminder_minutes: Optional[int] = Field(default=None, ge=1, le=MAX_REMINDER_MINUTES)
    attachment_url: Optional[str] = Field(default=None, max_length=500)
    attachment_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalise_instant(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)


class BookingRead(BaseModel):
    """
    Schema returned when reading booking information.

    Carries the stored values as they are; input limits are not re-applied.
    """
    id: int
    user_id: int
    room_id: int
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    participants: List[str] = Field(default_factory=list)
    status: BookingStatus
    remind_me: bool
    reminder_minutes: int
    reminder_sent: bool
    attachment_url: Optional[str] = None
    attachment_name: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ConflictCheckRequest(BaseModel):
    room_id: int = Field(..., ge=1)
    start_time: datetime
    end_time: datetime
    exclude_booking_id: Optional[int] = Field(default=None, ge=1)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalise_instant(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class ConflictCheckResponse(BaseModel):
    room_id: int
    has_conflict: bool


class RoomSummary(BaseModel):
    """Room fields exposed alongside an availability verdict."""
    id: int
    name: str
    capacity: int
    equipment: List[str] = Field(default_factory=list)
    location: Optional[str] = None


class RoomAvailability(BaseModel):
    room: RoomSummary
    available: bool
    reason: Optional[str] = None
