"""Injectable clocks.

Deadlines and retry timestamps are expressed in clock seconds so that
tests can drive readiness and backoff without real delays.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of monotonic time in seconds."""

    def now(self) -> float:
        ...


class MonotonicClock:
    """Wall-independent clock backed by :func:`time.monotonic`."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """Clock that only moves when told to.

    ``sleep`` advances the clock instead of waiting, so it can be passed
    to the worker as its sleep function.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def advance_ms(self, milliseconds: float) -> None:
        self._now += milliseconds / 1000.0

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += max(seconds, 0.0)
