"""Time sources for bucket refill math.

All timestamps are seconds as floats. Only differences between two readings
of the same clock are meaningful.
"""

import threading
import time
from typing import Protocol


class Clock(Protocol):
    """Anything that can report the current time in seconds."""

    def now(self) -> float:
        ...


class MonotonicClock:
    """Clock backed by ``time.monotonic``; immune to wall-clock adjustments."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """Clock that only moves when told to.

    Used to simulate elapsed time in tests and to replay time-skewed
    sequences deterministically.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        """Move the clock forward (or backward, for negative values)."""
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: float) -> None:
        with self._lock:
            self._now = float(timestamp)
