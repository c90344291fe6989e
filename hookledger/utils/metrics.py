"""
Latency measurement for webhook processing.

A Timer spans one delivery: started when the request reaches the engine,
read at each audit stage, stopped once when the outcome is recorded.
"""
import time
from typing import Optional

# Upper bounds (ms, exclusive) of the reporting buckets, smallest first
LATENCY_BUCKETS: tuple[tuple[int, str], ...] = (
    (100, "0-100ms"),
    (1000, "100ms-1s"),
    (5000, "1-5s"),
)
OVERFLOW_BUCKET = "5s+"


class Timer:
    """Monotonic millisecond timer. Usable as `Timer().start()` or `with Timer() as t:`."""

    __slots__ = ("_started", "_stopped")

    def __init__(self):
        self._started: Optional[float] = None
        self._stopped: Optional[float] = None

    def start(self) -> "Timer":
        self._started = time.perf_counter()
        self._stopped = None
        return self

    def stop(self) -> int:
        """Freeze the reading (first call wins) and return elapsed milliseconds."""
        if self._started is not None and self._stopped is None:
            self._stopped = time.perf_counter()
        return self.elapsed_ms

    @property
    def running(self) -> bool:
        return self._started is not None and self._stopped is None

    @property
    def elapsed_ms(self) -> int:
        if self._started is None:
            return 0
        end = self._stopped if self._stopped is not None else time.perf_counter()
        return int((end - self._started) * 1000)

    def __enter__(self) -> "Timer":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()


def latency_bucket(ms: int) -> str:
    for upper, label in LATENCY_BUCKETS:
        if ms < upper:
            return label
    return OVERFLOW_BUCKET
