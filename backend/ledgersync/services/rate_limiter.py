"""Outbound request throttling for the accounting API."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class AsyncTokenBucket:
    """
    Token bucket shared by every caller of one API client.

    Tokens refill continuously at `rate` per second up to `capacity`. With the
    default capacity of 1 consecutive requests are spaced at least 1 / rate
    seconds apart, and an idle period never builds up a burst.
    """

    def __init__(
        self,
        rate: float,
        capacity: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")

        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._updated = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def from_interval(cls, min_interval_seconds: float, **kwargs) -> "AsyncTokenBucket":
        return cls(rate=1.0 / min_interval_seconds, **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    def wait_time(self) -> float:
        """Seconds until a token is available, without consuming one."""
        self._refill()
        if self._tokens >= 1:
            return 0.0
        return (1 - self._tokens) / self.rate

    async def acquire(self) -> float:
        """
        Take one token, sleeping until it is available.

        Returns the number of seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            while True:
                delay = self.wait_time()
                if delay <= 0:
                    self._tokens -= 1
                    return waited
                logger.debug(f"Throttling outbound request for {delay:.3f}s")
                await self._sleep(delay)
                waited += delay
