from __future__ import annotations

import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """Source of the current instant, in epoch milliseconds."""

    @abstractmethod
    def now_ms(self) -> int:
        """Return the current time as integer milliseconds since the epoch."""


class SystemClock(Clock):
    """Real wall-clock time."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000


class FixedClock(Clock):
    """
    Manually driven clock for deterministic tests.

    Time only moves when ``set`` or ``advance`` is called.
    """

    def __init__(self, now_ms: int = 0) -> None:
        self._now_ms = now_ms

    def now_ms(self) -> int:
        return self._now_ms

    def set(self, now_ms: int) -> None:
        self._now_ms = now_ms

    def advance(self, *, ms: int = 0, seconds: int = 0) -> int:
        self._now_ms += ms + seconds * 1000
        return self._now_ms
