"""Operation counters and timings for a cache manager."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from cachestack.duration import now_ms
from cachestack.types import Clock

MAX_TREND_POINTS = 1000


@dataclass(slots=True)
class OperationTiming:
    count: int = 0
    total: float = 0.0  # ms
    min: float | None = None
    max: float = 0.0
    last: float = 0.0

    def record(self, duration: float) -> None:
        self.count += 1
        self.total += duration
        self.min = duration if self.min is None else min(self.min, duration)
        self.max = max(self.max, duration)
        self.last = duration

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "count": self.count,
            "total": self.total,
            "min": self.min or 0.0,
            "max": self.max,
            "last": self.last,
            "avg": self.avg,
        }


class CacheStatistics:
    """Hit/miss/write counters plus per-operation timing.

    Durations are milliseconds. ``sample()`` appends a point to the bounded
    hit-rate trend; the manager calls it on its stats interval.
    """

    def __init__(self, *, clock: Clock = now_ms) -> None:
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.deletes = 0
        self.errors = 0
        self.bytes_written = 0
        self._timings: dict[str, OperationTiming] = {}
        self._trend: deque[tuple[int, float]] = deque(maxlen=MAX_TREND_POINTS)
        self.last_updated = self._clock()

    def _touch(self) -> None:
        self.last_updated = self._clock()

    def record_hit(self, duration: float = 0.0) -> None:
        self.hits += 1
        self.record_timing("get", duration)

    def record_miss(self, duration: float = 0.0) -> None:
        self.misses += 1
        self.record_timing("get", duration)

    def record_set(self, size: int = 0, duration: float = 0.0) -> None:
        self.sets += 1
        self.bytes_written += size
        self.record_timing("set", duration)

    def record_delete(self, duration: float = 0.0) -> None:
        self.deletes += 1
        self.record_timing("delete", duration)

    def record_error(self) -> None:
        self.errors += 1
        self._touch()

    def record_timing(self, operation: str, duration: float) -> None:
        self._timings.setdefault(operation, OperationTiming()).record(duration)
        self._touch()

    @contextmanager
    def timer(self, operation: str) -> Iterator[None]:
        """Time a block and record it under ``operation``."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(operation, (time.perf_counter() - started) * 1000)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def sample(self) -> None:
        self._trend.append((self._clock(), self.hit_rate))

    def snapshot(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "errors": self.errors,
            "bytes_written": self.bytes_written,
            "hit_rate": self.hit_rate,
            "operations": {op: t.as_dict() for op, t in self._timings.items()},
            "trend": list(self._trend),
            "last_updated": self.last_updated,
        }


__all__ = ["CacheStatistics", "OperationTiming"]
