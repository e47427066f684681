import pytest

from vep_scheduler.circuit_breaker import CircuitBreaker
from vep_scheduler.errors import CircuitOpenError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_opens_after_threshold_and_reports_remaining():
    clock = FakeClock()
    breaker = CircuitBreaker(5, 300.0, clock=clock)
    for _ in range(4):
        breaker.record_failure()
        breaker.check()
    breaker.record_failure()
    assert breaker.is_open

    clock.now = 100.0
    with pytest.raises(CircuitOpenError) as excinfo:
        breaker.check()
    assert excinfo.value.retry_after == pytest.approx(200.0)
    assert breaker.state()["open"] is True


def test_success_resets_counter():
    breaker = CircuitBreaker(3, 300.0, clock=FakeClock())
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    breaker.record_failure()
    assert not breaker.is_open
    assert breaker.failures == 2


def test_cooldown_admits_next_call_and_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(2, 300.0, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    clock.now = 301.0
    breaker.check()
    breaker.record_failure()
    assert breaker.is_open
    clock.now = 700.0
    breaker.check()
    breaker.record_success()
    assert breaker.state() == {"open": False, "failures": 0, "threshold": 2, "retry_after": 0.0}
