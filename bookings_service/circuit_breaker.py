# bookings_service/circuit_breaker.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreaker:
    """
    Simple in-memory circuit breaker for outbound notification calls.

    States:
    - closed: all sends pass, count consecutive failures
    - open: sends are refused immediately
    - half_open: allow a trial send after reset timeout
    """

    def __init__(
        self,
        name: str,
        max_failures: int = 3,
        reset_timeout_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = timedelta(seconds=reset_timeout_seconds)
        self.clock = clock
        self.failure_count = 0
        self.state = "closed"  # "closed" | "open" | "half_open"
        self.last_failure_time: Optional[datetime] = None

    def allow_request(self) -> bool:
        """
        Return True if a send is allowed to go through, False if the circuit is open.
        """
        if self.state == "open":
            if self.last_failure_time is None:
                return False
            if self.clock() - self.last_failure_time >= self.reset_timeout:
                logger.info("Circuit %s half-open, allowing a trial send", self.name)
                self.state = "half_open"
                return True
            return False

        return True

    def record_success(self) -> None:
        """
        Reset the circuit on a successful send.
        """
        if self.state != "closed":
            logger.info("Circuit %s closed again", self.name)
        self.failure_count = 0
        self.state = "closed"
        self.last_failure_time = None

    def record_failure(self) -> None:
        """
        Count a failure; a failed trial or too many failures open the circuit.
        """
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if self.state == "half_open" or self.failure_count >= self.max_failures:
            if self.state != "open":
                logger.warning(
                    "Circuit %s opened after %d failure(s)", self.name, self.failure_count
                )
            self.state = "open"
