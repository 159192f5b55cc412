"""Clocks and deadlines for cancellable waits.

Every external call and every poll loop runs under a Deadline: a time
budget plus a cancel flag. Waiting goes through the clock, so tests swap in
a clock that advances simulated time instead of sleeping.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Optional, Protocol

from gigsettle.errors import DeadlineExceeded, VerificationCancelled


class Clock(Protocol):
    """Source of wall time and monotonic time, and a way to wait."""

    def now(self) -> datetime:
        ...

    def monotonic(self) -> float:
        ...

    def wait(self, seconds: float, cancel: threading.Event) -> bool:
        """Block up to seconds. Returns True if cancel was set."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def wait(self, seconds: float, cancel: threading.Event) -> bool:
        return cancel.wait(max(0.0, seconds))


class Deadline:
    """A time budget with cooperative cancellation.

    Usage:
        deadline = Deadline.after(30)
        client.fetch(timeout=deadline.remaining())
        deadline.cancel()   # from another thread
    """

    def __init__(
        self,
        expires_at: Optional[float],
        clock: Optional[Clock] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._expires_at = expires_at
        self._cancel = cancel_event or threading.Event()

    @classmethod
    def after(cls, seconds: float, clock: Optional[Clock] = None) -> Deadline:
        clk = clock or SystemClock()
        return cls(clk.monotonic() + seconds, clk)

    @classmethod
    def never(cls, clock: Optional[Clock] = None) -> Deadline:
        return cls(None, clock)

    def child(self, seconds: float) -> Deadline:
        """A tighter deadline sharing this one's cancel flag."""
        limit = self._clock.monotonic() + seconds
        if self._expires_at is not None:
            limit = min(limit, self._expires_at)
        return Deadline(limit, self._clock, self._cancel)

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def remaining(self) -> Optional[float]:
        """Seconds left, or None for an unbounded deadline."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self) -> None:
        """Raise if cancelled or out of time."""
        if self.cancelled:
            raise VerificationCancelled("Deadline cancelled by caller")
        if self.expired:
            raise DeadlineExceeded("Deadline exceeded")

    def timeout_for_call(self, default: float) -> float:
        """Per-call timeout: the smaller of default and time remaining."""
        self.check()
        remaining = self.remaining()
        return default if remaining is None else min(default, remaining)

    def sleep(self, seconds: float) -> bool:
        """Wait up to seconds (bounded by the deadline). True if cancelled."""
        remaining = self.remaining()
        duration = seconds if remaining is None else min(seconds, remaining)
        return self._clock.wait(duration, self._cancel)
