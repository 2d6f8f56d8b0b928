"""Clock capability injected into the planner, writer and engine.

Every timestamp in the sync engine is an integer count of milliseconds
since the Unix epoch.  Components never read the wall clock directly; they
call the ``Clock`` they were given, so tests can substitute a fake.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

Clock = Callable[[], int]


def system_clock() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


class MonotonicClock:
    """Wrap a clock so successive readings never go backwards.

    Wall clocks can step backwards (NTP adjustments, manual changes).  The
    planner and writer stamp ``last_synced_at`` from the clock, and those
    stamps must be non-decreasing for the pending check to stay meaningful.

    Args:
        source: Underlying clock.  Defaults to :func:`system_clock`.
    """

    def __init__(self, source: Clock = system_clock) -> None:
        self._source = source
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            now = self._source()
            if now < self._last:
                now = self._last
            self._last = now
            return now
