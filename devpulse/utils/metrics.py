"""
Timing helpers for ingress latency and task duration.
"""
import time
from datetime import datetime
from typing import Optional


class Timer:
    """Simple timer for measuring operation latency."""

    def __init__(self):
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def start(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def stop(self) -> float:
        """Stop timer and return elapsed milliseconds."""
        self._end = time.perf_counter()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time in milliseconds, rounded to two decimals."""
        if self._start is None:
            return 0.0
        end = self._end or time.perf_counter()
        return round((end - self._start) * 1000, 2)


def seconds_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Whole seconds from start to end, or None when either side is unknown."""
    if start is None or end is None:
        return None
    return int((end - start).total_seconds())
