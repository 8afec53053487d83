from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Integer, String, Text

from .database import Base


class BookingStatus(str, PyEnum):
    """
    Enumeration of possible booking statuses.

    Values
    ------
    pending
        Booking has been created but not yet confirmed. Never blocks a room.
    confirmed
        Booking is active and holds the room for the given time range.
    cancelled
        Booking has been cancelled; ignored by conflict checks and reminders.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


DEFAULT_REMINDER_MINUTES = 15


class Booking(Base):
    """
    SQLAlchemy model representing a room booking.

    All timestamps are stored as naive UTC.

    Attributes
    ----------
    id : int
        Primary key, assigned at creation.
    user_id : int
        Identifier of the user who owns the booking.
    room_id : int
        Identifier of the booked room.
    title : str
        Short meeting title shown in reminders and calendar invites.
    description : str
        Optional free-text agenda.
    start_time : datetime
        Start of the reserved half-open interval.
    end_time : datetime
        End of the reserved half-open interval (exclusive).
    status : BookingStatus
        Current status of the booking (pending/confirmed/cancelled).
    participants : list[str]
        Contact addresses of invited participants.
    remind_me : bool
        Whether the owner opted into a reminder.
    reminder_minutes : int
        Lead time of the reminder, in minutes before ``start_time``.
    reminder_sent : bool
        Set once by the reminder scheduler after a successful dispatch.
    attachment_url : str
        Optional reference to an uploaded attachment.
    attachment_name : str
        Display name of the attachment.
    created_at : datetime
        Timestamp when the booking was created.
    updated_at : datetime
        Timestamp of the last modification.
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    room_id = Column(Integer, index=True, nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    status = Column(Enum(BookingStatus), nullable=False, default=BookingStatus.CONFIRMED)
    participants = Column(JSON, nullable=False, default=list)
    remind_me = Column(Boolean, nullable=False, default=False)
    reminder_minutes = Column(Integer, nullable=False, default=DEFAULT_REMINDER_MINUTES)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    attachment_url = Column(String(500), nullable=True)
    attachment_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Room(Base):
    """
    Read-only view of a meeting room owned by the room catalog.

    Attributes
    ----------
    id : int
        Primary key.
    name : str
        Human-readable room name (e.g. 'Conference Room A').
    capacity : int
        Maximum number of people the room can hold.
    equipment : str
        Optional comma-separated list of equipment (e.g. 'projector,whiteboard').
    location : str
        Physical location description (building, floor, etc.).
    is_active : bool
        Inactive rooms are left out of availability queries and cannot be booked.
    """
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    capacity = Column(Integer, nullable=False)
    equipment = Column(String(255), nullable=True)
    location = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True)

    @property
    def equipment_tags(self):
        if not self.equipment:
            return []
        return [tag.strip() for tag in self.equipment.split(",") if tag.strip()]


class User(Base):
    """
    Read-only view of a user from the user directory, used to address reminders.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
