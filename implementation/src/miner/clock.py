from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> float: ...


class SystemClock:
    """Client wall clock in epoch milliseconds. Not trusted; offline math caps it."""

    def now_ms(self) -> float:
        return time.time() * 1000.0


class ManualClock:
    """Deterministic clock for tests and replays."""

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = float(start_ms)

    def now_ms(self) -> float:
        return self._now

    def advance(self, ms: float) -> float:
        self._now += ms
        return self._now

    def set(self, ms: float) -> None:
        self._now = float(ms)
