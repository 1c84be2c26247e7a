"""Approximate event counting over a sliding time window.

The window is made of two fixed windows, the previous one and the current
one. Suppose a window size of 60s and the time is now 75s: the current
window started 15s ago and holds 12 events, the whole previous window holds
86 events. The approximate count over the sliding window is then::

    count = 86 * ((60 - 15) / 60) + 12 = 76.5

which is truncated to an integer.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

_NS_PER_SECOND = 1_000_000_000


@dataclass
class _Window:
    """A fixed window: its start boundary in nanoseconds and its event count."""

    start: int = 0
    count: int = 0

    def reset(self, start: int, count: int) -> None:
        self.start = start
        self.count = count


class SlidingWindow:
    """Counts events over the last ``size`` seconds, thread safe."""

    def __init__(self, size: float) -> None:
        size_ns = int(round(size * _NS_PER_SECOND))
        if size_ns <= 0:
            raise ValueError("window size must be positive")
        self._size = size
        self._size_ns = size_ns
        self._lock = threading.Lock()
        self._curr = _Window()
        self._prev = _Window()

    def size(self) -> float:
        """Return the size of one window in seconds."""
        return self._size

    def record(self) -> None:
        """Record one event happening now."""
        self._record_ns(time.time_ns(), 1)

    def record_n(self, now: float, n: int) -> None:
        """Record ``n`` events happening at ``now`` (seconds since the epoch)."""
        self._record_ns(int(round(now * _NS_PER_SECOND)), n)

    def count(self) -> int:
        """Return the approximate number of events in the sliding window."""
        with self._lock:
            now = time.time_ns()
            self._advance(now)
            elapsed = now - self._curr.start
            weight = (self._size_ns - elapsed) / self._size_ns
            return int(weight * self._prev.count) + self._curr.count

    def _record_ns(self, now_ns: int, n: int) -> None:
        with self._lock:
            self._advance(now_ns)
            self._curr.count += n

    def _advance(self, now_ns: int) -> None:
        new_start = now_ns - now_ns % self._size_ns
        diff = (new_start - self._curr.start) // self._size_ns
        if diff == 0:
            return
        previous_count = self._curr.count if diff == 1 else 0
        self._curr.reset(new_start, 0)
        self._prev.reset(new_start - self._size_ns, previous_count)