"""
Reminder scheduler.

A single background thread scans upcoming bookings every
``REMINDER_INTERVAL_SECONDS`` and sends each due reminder once. Delivery state
lives only in ``Booking.reminder_sent``: a booking is marked right after its
dispatch succeeds and before the next one is processed, and a failed dispatch
leaves it unmarked so the next tick retries it.

A crash between a successful send and the mark can still produce one
duplicate reminder on the following tick.
"""
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from . import models
from .errors import DispatchFailure, StoreUnavailable
from .notifications import NotificationDispatcher, render_reminder
from .store import BookingStore

logger = logging.getLogger(__name__)

REMINDERS_ENABLED = os.getenv("REMINDERS_ENABLED", "true").lower() in {"1", "true", "yes"}
REMINDER_INTERVAL_SECONDS = int(os.getenv("REMINDER_INTERVAL_SECONDS", "120"))
REMINDER_LOOKAHEAD_DAYS = int(os.getenv("REMINDER_LOOKAHEAD_DAYS", "7"))

SKIP_CANCELLED = "cancelled"
SKIP_NOT_REQUESTED = "reminder_disabled"
SKIP_ALREADY_SENT = "already_sent"
SKIP_NOT_DUE = "not_due"
SKIP_STARTED = "meeting_started"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def reminder_send_at(booking: models.Booking) -> datetime:
    # a zero lead would leave no instant where the reminder is due
    lead = booking.reminder_minutes or models.DEFAULT_REMINDER_MINUTES
    return booking.start_time - timedelta(minutes=lead)


def reminder_skip_reason(booking: models.Booking, now: datetime) -> Optional[str]:
    """
    Return why no reminder should go out for ``booking`` at ``now``, or None
    when it is due.

    Due means ``send_at <= now < start``, the owner opted in, nothing was sent
    yet and the booking is not cancelled.
    """
    if booking.status == models.BookingStatus.CANCELLED:
        return SKIP_CANCELLED
    if not booking.remind_me:
        return SKIP_NOT_REQUESTED
    if booking.reminder_sent:
        return SKIP_ALREADY_SENT
    if now < reminder_send_at(booking):
        return SKIP_NOT_DUE
    if now >= booking.start_time:
        return SKIP_STARTED
    return None


def is_reminder_due(booking: models.Booking, now: datetime) -> bool:
    return reminder_skip_reason(booking, now) is None


@dataclass
class TickSummary:
    now: datetime
    scanned: int = 0
    sent: int = 0
    failed: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    aborted: bool = False

    def skip(self, reason: str) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + 1

    def describe(self) -> str:
        skipped = ", ".join(f"{k}={v}" for k, v in sorted(self.skipped.items())) or "none"
        text = (
            f"Reminder tick at {self.now.isoformat()}: scanned={self.scanned} "
            f"sent={self.sent} failed={self.failed} skipped=[{skipped}]"
        )
        if self.aborted:
            text += " ABORTED (store unavailable)"
        return text


class ReminderScheduler:
    """
    Owns the recurring reminder task.

    Parameters
    ----------
    session_factory : Callable[[], Session]
        Opens the database session used for one tick.
    dispatcher : NotificationDispatcher
        Delivery channel for rendered reminders.
    interval_seconds : int
        Pause between the end of one tick and the start of the next.
    lookahead : timedelta
        Only bookings starting within ``[now, now + lookahead]`` are scanned.
    enabled : bool
        When False, ticks return immediately without touching the store.
    clock : Callable[[], datetime]
        Source of naive-UTC "now".
    display_tz : tzinfo
        Zone used for dates and times shown in reminder e-mails.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: NotificationDispatcher,
        interval_seconds: int = REMINDER_INTERVAL_SECONDS,
        lookahead: timedelta = timedelta(days=REMINDER_LOOKAHEAD_DAYS),
        enabled: bool = REMINDERS_ENABLED,
        clock: Callable[[], datetime] = _utcnow,
        display_tz: Optional[tzinfo] = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.lookahead = lookahead
        self.enabled = enabled
        self.clock = clock
        self.display_tz = display_tz
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- lifecycle ----------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Run one tick right away, then one every ``interval_seconds``."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="reminder-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(
            "Reminder scheduler started, checking every %d seconds", self.interval_seconds
        )

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reminder scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                # keep the timer alive; the next tick starts from scratch
                logger.exception("Unexpected error in reminder tick")
            self._stop_event.wait(self.interval_seconds)

    # ---------- one scan ----------

    def tick(self, now: Optional[datetime] = None) -> TickSummary:
        """
        Scan upcoming bookings once and dispatch every due reminder.

        Ticks never overlap. A ``StoreUnavailable`` aborts the scan; failed
        dispatches are counted and left for the next tick.
        """
        with self._tick_lock:
            now = now or self.clock()
            summary = TickSummary(now=now)
            if not self.enabled:
                logger.info("Reminders are disabled, skipping tick")
                return summary

            db = self.session_factory()
            try:
                self._scan(BookingStore(db), now, summary)
            except StoreUnavailable:
                summary.aborted = True
                logger.exception("Reminder tick aborted")
            finally:
                db.close()

            log = logger.error if summary.aborted else logger.info
            log(summary.describe())
            return summary

    def _scan(self, store: BookingStore, now: datetime, summary: TickSummary) -> None:
        bookings = store.list_bookings_starting_in_window(now, now + self.lookahead)
        for booking in bookings:
            summary.scanned += 1
            reason = reminder_skip_reason(booking, now)
            if reason is not None:
                summary.skip(reason)
                logger.debug("Booking %s skipped: %s", booking.id, reason)
                continue

            try:
                self._dispatch(store, booking, now)
            except DispatchFailure as exc:
                summary.failed += 1
                logger.warning("Reminder for booking %s not delivered: %s", booking.id, exc)
                continue
            except StoreUnavailable:
                raise
            except Exception:
                summary.failed += 1
                logger.exception("Unexpected error dispatching reminder for booking %s", booking.id)
                continue

            store.mark_reminder_sent(booking.id)
            summary.sent += 1
            logger.info("Reminder sent for booking %s (%s)", booking.id, booking.title)

    def _dispatch(self, store: BookingStore, booking: models.Booking, now: datetime) -> None:
        room = store.get_room(booking.room_id)
        owner = store.get_user(booking.user_id)
        if room is None or owner is None:
            raise DispatchFailure("User or room not found")

        message = render_reminder(booking, room, owner, now, display_tz=self.display_tz)
        self.dispatcher.send(
            message.recipient,
            message.subject,
            message.body,
            message.calendar_attachment,
        )
