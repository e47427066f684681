"""In-memory sliding window rate limiter for outbound deliveries."""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional


class RateLimiter:
    """Allow at most ``max_per_window`` acquisitions per ``window_seconds``.

    ``acquire`` blocks until the oldest timestamp in the window ages out.
    The clock and sleep function are injectable for tests.
    """

    def __init__(
        self,
        max_per_window: int = 20,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_limited: Optional[Callable[[], None]] = None,
    ):
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._on_limited = on_limited
        self._stamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window_seconds:
            self._stamps.popleft()

    def wait_time(self) -> float:
        """Return the seconds a caller would wait right now (0 when free)."""
        now = self._clock()
        self._prune(now)
        if len(self._stamps) < self.max_per_window:
            return 0.0
        return max(0.0, self._stamps[0] + self.window_seconds - now)

    async def acquire(self) -> float:
        """Reserve a slot, sleeping if the window is full.

        Returns the total number of seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            while True:
                delay = self.wait_time()
                if delay <= 0:
                    break
                if waited == 0.0 and self._on_limited is not None:
                    self._on_limited()
                await self._sleep(delay)
                waited += delay
            self._stamps.append(self._clock())
        return waited

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._stamps)
