"""Deadline and cancellation signal passed down one sync session."""

import asyncio
import time
from collections.abc import Callable

from ledgersync.exceptions import SyncTimeout


class SyncContext:
    """
    Carries the session deadline and a cooperative cancel flag.

    Every blocking call made on behalf of a session (HTTP requests, backoff
    sleeps) is bounded by remaining(). Cancellation is only observed at page
    boundaries by the entity worker.
    """

    def __init__(
        self,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self.deadline = clock() + timeout_seconds if timeout_seconds is not None else None
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def raise_if_expired(self) -> None:
        if self.expired:
            raise SyncTimeout("Sync deadline exceeded")

    def bound(self, seconds: float) -> float:
        """Clamp a sleep or timeout so it cannot outlive the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return seconds
        return min(seconds, remaining)
