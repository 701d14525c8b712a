"""Deadlines and cooperative cancellation for a session's step loop."""

from __future__ import annotations

import asyncio
import math
import time
from typing import Callable

from llamaclick.errors import SessionAborted

Clock = Callable[[], float]


class Deadline:
    """A point in time after which work must stop. ``None`` seconds means never."""

    def __init__(self, seconds: float | None, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._start = clock()
        self._seconds = seconds

    @property
    def seconds(self) -> float | None:
        return self._seconds

    def elapsed(self) -> float:
        return self._clock() - self._start

    def remaining(self) -> float:
        if self._seconds is None:
            return math.inf
        return max(0.0, self._seconds - self.elapsed())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def bound(self, timeout: float) -> tuple[float, bool]:
        """Clamp ``timeout`` to what is left; the flag is True when this deadline is the tighter one."""
        remaining = self.remaining()
        if remaining < timeout:
            return remaining, True
        return timeout, False


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SessionAborted(self._reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early and raising SessionAborted if cancelled."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise SessionAborted(self._reason)
