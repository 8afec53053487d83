"""
Reminder rendering and delivery.

The scheduler only relies on the ``NotificationDispatcher`` contract: ``send``
either returns or raises ``DispatchFailure``. ``SmtpNotificationDispatcher`` is
the production implementation; tests plug in their own.
"""
import html
import logging
import os
import smtplib
import ssl
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from email.message import EmailMessage
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from icalendar import Calendar, Event, vCalAddress, vText

from . import models
from .circuit_breaker import CircuitBreaker
from .errors import DispatchFailure

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL", "rooms@example.com")
SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "Meeting Room Reservations")
SMTP_TIMEOUT_SECONDS = float(os.getenv("SMTP_TIMEOUT_SECONDS", "10"))

DISPLAY_TIMEZONE = os.getenv("REMINDER_DISPLAY_TIMEZONE", "UTC")
INVITE_UID_DOMAIN = os.getenv("INVITE_UID_DOMAIN", "meeting-rooms.local")
INVITE_FILENAME = "meeting-reminder.ics"


class NotificationDispatcher(Protocol):
    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        calendar_attachment: Optional[bytes] = None,
    ) -> None:
        ...


@dataclass
class ReminderMessage:
    recipient: str
    subject: str
    body: str
    calendar_attachment: Optional[bytes] = None


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count != 1 else ''}"


def time_until_text(minutes: int) -> str:
    """Human wording for the lead time, e.g. '1 hour and 5 minutes'."""
    minutes = max(minutes, 0)
    hours, rest = divmod(minutes, 60)
    if hours == 0:
        return _plural(rest, "minute")
    text = _plural(hours, "hour")
    if rest:
        text += f" and {_plural(rest, 'minute')}"
    return text


def _format_time(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def build_calendar_invite(
    booking: models.Booking,
    room: models.Room,
    organizer: models.User,
    now: Optional[datetime] = None,
) -> bytes:
    """Return a METHOD:REQUEST iCalendar invite for the booking."""
    cal = Calendar()
    cal.add("prodid", "-//Meeting Room Reservations//EN")
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")
    cal.add("method", "REQUEST")

    event = Event()
    event.add("uid", f"booking-{booking.id}@{INVITE_UID_DOMAIN}")
    event.add("dtstamp", _as_utc(now or datetime.now(timezone.utc)))
    event.add("dtstart", _as_utc(booking.start_time))
    event.add("dtend", _as_utc(booking.end_time))
    event.add("summary", booking.title)
    if booking.description:
        event.add("description", booking.description)
    event.add("location", room.name or "Meeting Room")

    if organizer.email:
        org = vCalAddress(f"mailto:{organizer.email}")
        org.params["cn"] = vText(organizer.name or organizer.email)
        event["organizer"] = org

    for address in booking.participants or []:
        attendee = vCalAddress(f"mailto:{address}")
        attendee.params["role"] = vText("REQ-PARTICIPANT")
        attendee.params["partstat"] = vText("NEEDS-ACTION")
        attendee.params["rsvp"] = vText("TRUE")
        event.add("attendee", attendee, encode=0)

    event.add("status", "CONFIRMED")
    event.add("sequence", 0)
    cal.add_component(event)
    return cal.to_ical()


def render_reminder(
    booking: models.Booking,
    room: models.Room,
    owner: models.User,
    now: datetime,
    display_tz: Optional[tzinfo] = None,
) -> ReminderMessage:
    """
    Build the reminder e-mail for the booking owner.

    ``now`` and the booking instants are naive UTC. Dates and times in the
    body are shown in ``display_tz``.
    """
    if not owner.email:
        raise DispatchFailure(f"User {owner.id} has no e-mail address")

    tz = display_tz or resolve_timezone(DISPLAY_TIMEZONE)
    start_local = _as_utc(booking.start_time).astimezone(tz)
    end_local = _as_utc(booking.end_time).astimezone(tz)
    minutes_left = int((booking.start_time - now).total_seconds() // 60)
    until = time_until_text(minutes_left)

    rows = [
        ("Title", booking.title),
        ("Room", room.name),
        ("Date", start_local.strftime("%m/%d/%Y")),
        ("Time", f"{_format_time(start_local)} - {_format_time(end_local)}"),
    ]
    if booking.description:
        rows.append(("Description", booking.description))
    details = "\n".join(
        f'<p style="margin: 8px 0;"><strong>{label}:</strong> {html.escape(str(value))}</p>'
        for label, value in rows
    )
    body = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">\n'
        '<h2 style="color: #2563eb;">Meeting Reminder</h2>\n'
        f'<p style="font-weight: 600;">Your meeting starts in {until}</p>\n'
        f'<div style="background-color: #f3f4f6; padding: 16px; border-radius: 8px;">\n{details}\n</div>\n'
        '<p style="color: #6b7280; font-size: 14px;">Don\'t forget to prepare for your meeting!</p>\n'
        "</div>"
    )

    return ReminderMessage(
        recipient=owner.email,
        subject=f"Reminder: {booking.title} starts in {until}",
        body=body,
        calendar_attachment=build_calendar_invite(booking, room, owner, now=now),
    )


class SmtpNotificationDispatcher:
    """
    Deliver reminders over SMTP with the invite attached.

    Port 465 uses implicit TLS, any other port upgrades with STARTTLS when the
    server offers it. Transport errors open ``breaker`` after repeated
    failures; while open, sends fail fast.
    """

    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        username: str = SMTP_USERNAME,
        password: str = SMTP_PASSWORD,
        from_email: str = SMTP_FROM_EMAIL,
        from_name: str = SMTP_FROM_NAME,
        timeout: float = SMTP_TIMEOUT_SECONDS,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(name="smtp")

    def _build_message(
        self,
        recipient: str,
        subject: str,
        body: str,
        calendar_attachment: Optional[bytes],
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient
        msg["Message-ID"] = f"<{uuid.uuid4()}@{INVITE_UID_DOMAIN}>"
        msg.set_content(body, subtype="html")
        if calendar_attachment is not None:
            msg.add_attachment(
                calendar_attachment,
                maintype="text",
                subtype="calendar",
                filename=INVITE_FILENAME,
                params={"method": "REQUEST", "charset": "utf-8"},
            )
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context) as server:
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls(context=context)
                    server.ehlo()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(msg)

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        calendar_attachment: Optional[bytes] = None,
    ) -> None:
        if not self.host:
            raise DispatchFailure("SMTP host is not configured")
        if not self.breaker.allow_request():
            raise DispatchFailure("SMTP circuit open, delivery skipped")

        msg = self._build_message(recipient, subject, body, calendar_attachment)
        try:
            self._deliver(msg)
        except (smtplib.SMTPException, OSError) as exc:
            self.breaker.record_failure()
            raise DispatchFailure(f"SMTP delivery to {recipient} failed: {exc}") from exc

        self.breaker.record_success()
        logger.info("Sent %r to %s", subject, recipient)
