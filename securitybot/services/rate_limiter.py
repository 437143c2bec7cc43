"""Admission control for provider calls: a concurrency bound plus a sliding-window rate limit.

AdmissionController is the single coordination point for a run. Each request holds one
concurrency permit for its whole duration and consumes one slot in the rolling window when it
is admitted. Waiters are served in arrival order. A request that could only be admitted after
the run deadline raises RateLimitExceeded instead of waiting.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from securitybot.core.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class SlidingWindowRateLimiter:
    """At most max_requests admissions within any window-second interval."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._admitted: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self.window_seconds:
            self._admitted.popleft()

    def time_until_available(self) -> float:
        now = self._clock()
        self._prune(now)
        if len(self._admitted) < self.max_requests:
            return 0.0
        return max(0.0, self._admitted[0] + self.window_seconds - now)

    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._admitted)

    async def acquire(self, deadline: float | None = None) -> float:
        """
        Wait for a slot and record the admission. Returns the admission time.

        The lock makes waiters line up in arrival order; only the head of the line sleeps.
        """
        async with self._lock:
            while True:
                wait = self.time_until_available()
                if wait <= 0:
                    admitted_at = self._clock()
                    self._admitted.append(admitted_at)
                    return admitted_at
                if deadline is not None and self._clock() + wait > deadline:
                    raise RateLimitExceeded(
                        f"Rate limit of {self.max_requests} requests per "
                        f"{self.window_seconds:g}s cannot admit another request before the run deadline."
                    )
                logger.debug(
                    "Rate limit window full; waiting",
                    extra={"wait_seconds": round(wait, 3), "in_window": len(self._admitted)},
                )
                await self._sleep(wait)


class AdmissionController:
    """Grants a concurrency permit and a rate-window slot together, per request."""

    def __init__(self, max_concurrent: int, limiter: SlidingWindowRateLimiter) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.limiter = limiter
        self._permits = asyncio.Semaphore(max_concurrent)
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @asynccontextmanager
    async def admit(self, deadline: float | None = None) -> AsyncIterator[None]:
        await self._permits.acquire()
        try:
            await self.limiter.acquire(deadline)
        except BaseException:
            self._permits.release()
            raise
        self._in_flight += 1
        try:
            yield
        finally:
            self._in_flight -= 1
            self._permits.release()
