import os
import sys
from datetime import datetime, timedelta, timezone

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_bookings.db")
os.environ.setdefault("REMINDERS_ENABLED", "false")

import smtplib

import pytest
from icalendar import Calendar

from bookings_service import models, notifications
from bookings_service.circuit_breaker import CircuitBreaker
from bookings_service.errors import DispatchFailure
from bookings_service.notifications import (
    SmtpNotificationDispatcher,
    build_calendar_invite,
    render_reminder,
    time_until_text,
)

NOW = datetime(2030, 1, 7, 8, 5)


def make_booking(**overrides):
    values = dict(
        id=5,
        user_id=1,
        room_id=1,
        title="Quarterly review",
        description="Numbers & <charts>",
        start_time=datetime(2030, 1, 7, 8, 20),
        end_time=datetime(2030, 1, 7, 9, 20),
        participants=["bob@example.com", "carol@example.com"],
        status=models.BookingStatus.CONFIRMED,
        remind_me=True,
        reminder_minutes=15,
        reminder_sent=False,
    )
    values.update(overrides)
    return models.Booking(**values)


ROOM = models.Room(id=1, name="Room A", capacity=8)
OWNER = models.User(id=1, name="Ada Lovelace", username="ada", email="ada@example.com")


def test_time_until_text():
    assert time_until_text(1) == "1 minute"
    assert time_until_text(15) == "15 minutes"
    assert time_until_text(60) == "1 hour"
    assert time_until_text(125) == "2 hours and 5 minutes"
    assert time_until_text(-3) == "0 minutes"


def test_render_reminder_contents():
    message = render_reminder(make_booking(), ROOM, OWNER, NOW, display_tz=timezone.utc)

    assert message.recipient == "ada@example.com"
    assert message.subject == "Reminder: Quarterly review starts in 15 minutes"
    assert "Room A" in message.body
    assert "01/07/2030" in message.body
    assert "8:20 AM - 9:20 AM" in message.body
    assert "Numbers &amp; &lt;charts&gt;" in message.body
    assert message.calendar_attachment is not None


def test_render_reminder_uses_display_timezone():
    plus_two = timezone(timedelta(hours=2))
    message = render_reminder(make_booking(), ROOM, OWNER, NOW, display_tz=plus_two)
    assert "10:20 AM - 11:20 AM" in message.body


def test_render_reminder_without_description():
    message = render_reminder(make_booking(description=None), ROOM, OWNER, NOW, display_tz=timezone.utc)
    assert "Description" not in message.body


def test_owner_without_email_cannot_be_reminded():
    no_mail = models.User(id=3, name="No Mail", username="nomail", email=None)
    with pytest.raises(DispatchFailure):
        render_reminder(make_booking(), ROOM, no_mail, NOW, display_tz=timezone.utc)


def test_calendar_invite_fields():
    raw = build_calendar_invite(make_booking(), ROOM, OWNER, now=NOW)
    cal = Calendar.from_ical(raw)

    assert str(cal["method"]) == "REQUEST"
    events = [c for c in cal.walk() if c.name == "VEVENT"]
    assert len(events) == 1
    event = events[0]
    assert str(event["uid"]) == "booking-5@meeting-rooms.local"
    assert str(event["summary"]) == "Quarterly review"
    assert str(event["location"]) == "Room A"
    assert str(event["status"]) == "CONFIRMED"
    assert event.decoded("dtstart") == datetime(2030, 1, 7, 8, 20, tzinfo=timezone.utc)
    assert event.decoded("dtend") == datetime(2030, 1, 7, 9, 20, tzinfo=timezone.utc)
    assert str(event["organizer"]) == "mailto:ada@example.com"
    attendees = sorted(str(a) for a in event["attendee"])
    assert attendees == ["mailto:bob@example.com", "mailto:carol@example.com"]


class FakeSMTP:
    instances = []
    fail = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        FakeSMTP.instances.append(self)
        if self.fail:
            raise ConnectionRefusedError("connection refused")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return False

    def login(self, username, password):
        self.logged_in = username

    def send_message(self, msg):
        self.sent.append(msg)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail = False
    monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def test_smtp_dispatcher_sends_html_with_invite(fake_smtp):
    dispatcher = SmtpNotificationDispatcher(
        host="smtp.example.com", port=587, username="mailer", password="secret",
        from_email="rooms@example.com", from_name="Rooms",
    )

    dispatcher.send("ada@example.com", "Reminder: x", "<p>hi</p>", b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n")

    server = fake_smtp.instances[0]
    assert server.host == "smtp.example.com"
    assert server.logged_in == "mailer"
    msg = server.sent[0]
    assert msg["To"] == "ada@example.com"
    assert msg["Subject"] == "Reminder: x"
    assert msg["From"] == "Rooms <rooms@example.com>"
    attachments = list(msg.iter_attachments())
    assert len(attachments) == 1
    assert attachments[0].get_content_type() == "text/calendar"
    assert attachments[0].get_filename() == "meeting-reminder.ics"


def test_smtp_failure_becomes_dispatch_failure_and_opens_circuit(fake_smtp):
    fake_smtp.fail = True
    dispatcher = SmtpNotificationDispatcher(
        host="smtp.example.com", port=587, breaker=CircuitBreaker("smtp", max_failures=2)
    )

    for _ in range(2):
        with pytest.raises(DispatchFailure):
            dispatcher.send("ada@example.com", "s", "b")
    assert dispatcher.breaker.state == "open"

    with pytest.raises(DispatchFailure):
        dispatcher.send("ada@example.com", "s", "b")
    assert len(fake_smtp.instances) == 2


def test_unconfigured_smtp_fails_without_connecting(fake_smtp):
    dispatcher = SmtpNotificationDispatcher(host="")
    with pytest.raises(DispatchFailure):
        dispatcher.send("ada@example.com", "s", "b")
    assert fake_smtp.instances == []


def test_smtp_exception_is_translated(monkeypatch):
    class RejectingSMTP(FakeSMTP):
        def send_message(self, msg):
            raise smtplib.SMTPRecipientsRefused({"ada@example.com": (550, b"no such user")})

    monkeypatch.setattr(notifications.smtplib, "SMTP", RejectingSMTP)
    RejectingSMTP.fail = False
    dispatcher = SmtpNotificationDispatcher(host="smtp.example.com", port=25)

    with pytest.raises(DispatchFailure):
        dispatcher.send("ada@example.com", "s", "b")
    assert dispatcher.breaker.failure_count == 1
