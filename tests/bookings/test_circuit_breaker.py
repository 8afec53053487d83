import os
import sys
from datetime import datetime, timedelta, timezone

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from bookings_service.circuit_breaker import CircuitBreaker


class FakeClock:
    def __init__(self):
        self.now = datetime(2030, 1, 7, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def test_opens_after_max_failures():
    breaker = CircuitBreaker("smtp", max_failures=3, clock=FakeClock())
    for _ in range(2):
        breaker.record_failure()
        assert breaker.allow_request() is True
    breaker.record_failure()
    assert breaker.state == "open"
    assert breaker.allow_request() is False


def test_half_open_after_timeout_then_closes_on_success():
    clock = FakeClock()
    breaker = CircuitBreaker("smtp", max_failures=1, reset_timeout_seconds=60, clock=clock)
    breaker.record_failure()
    assert breaker.allow_request() is False

    clock.now += timedelta(seconds=61)
    assert breaker.allow_request() is True
    assert breaker.state == "half_open"

    breaker.record_success()
    assert breaker.state == "closed"
    assert breaker.failure_count == 0


def test_failed_trial_reopens_immediately():
    clock = FakeClock()
    breaker = CircuitBreaker("smtp", max_failures=5, reset_timeout_seconds=60, clock=clock)
    for _ in range(5):
        breaker.record_failure()
    clock.now += timedelta(seconds=60)
    assert breaker.allow_request() is True

    breaker.record_failure()
    assert breaker.state == "open"
    assert breaker.allow_request() is False
