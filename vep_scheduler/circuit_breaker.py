"""Consecutive-failure circuit breaker guarding the messaging channel."""

import time
from typing import Any, Callable, Dict, Optional

from .errors import CircuitOpenError


class CircuitBreaker:
    """Open after ``failure_threshold`` consecutive failures.

    While open every :meth:`check` raises :class:`CircuitOpenError` carrying
    the remaining cooldown. Once the cooldown has elapsed the next call is
    admitted; its outcome closes the breaker or re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self.failures = 0
        self._opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        return self._clock() - self._opened_at < self.cooldown_seconds

    def remaining(self) -> float:
        """Seconds left before the breaker admits calls again."""
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))

    def check(self) -> None:
        if self.is_open:
            raise CircuitOpenError(self.remaining())

    def record_success(self) -> None:
        self.failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.failure_threshold:
            self._opened_at = self._clock()

    def state(self) -> Dict[str, Any]:
        """Snapshot used by the status endpoints."""
        return {
            "open": self.is_open,
            "failures": self.failures,
            "threshold": self.failure_threshold,
            "retry_after": round(self.remaining(), 1) if self.is_open else 0.0,
        }
