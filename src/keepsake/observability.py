"""In-process observability: latency aggregates and degradation counters.

Degradations are handled failures that are never raised to callers: a
provider call that failed, a search that fell back to lexical ranking.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from time import perf_counter

logger = logging.getLogger(__name__)


@dataclass
class LatencySummary:
    """Aggregated latency metrics for one operation."""

    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    last_ms: float = 0.0

    def add(self, duration_ms: float, ok: bool) -> None:
        self.count += 1
        if not ok:
            self.error_count += 1
        self.total_ms += duration_ms
        self.last_ms = duration_ms
        if self.count == 1:
            self.min_ms = self.max_ms = duration_ms
        else:
            self.min_ms = min(self.min_ms, duration_ms)
            self.max_ms = max(self.max_ms, duration_ms)

    def as_dict(self) -> dict[str, float | int]:
        return {
            "count": self.count,
            "error_count": self.error_count,
            "total_ms": round(self.total_ms, 3),
            "avg_ms": round(self.total_ms / self.count if self.count else 0.0, 3),
            "min_ms": round(self.min_ms, 3),
            "max_ms": round(self.max_ms, 3),
            "last_ms": round(self.last_ms, 3),
        }


class _Recorder:
    def __init__(self) -> None:
        self._lock = Lock()
        self._latency: dict[str, LatencySummary] = {}
        self._degradations: Counter[str] = Counter()

    def record_latency(self, operation: str, duration_ms: float, ok: bool) -> None:
        normalized = max(float(duration_ms), 0.0)
        with self._lock:
            self._latency.setdefault(operation, LatencySummary()).add(normalized, ok)
        logger.debug(
            "latency operation=%s duration_ms=%.3f ok=%s", operation, normalized, ok
        )

    def record_degradation(self, kind: str) -> None:
        with self._lock:
            self._degradations[kind] += 1

    def latency_snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            return {
                operation: summary.as_dict()
                for operation, summary in sorted(self._latency.items())
            }

    def degradation_snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._degradations.items()))

    def reset(self) -> None:
        with self._lock:
            self._latency.clear()
            self._degradations.clear()


_RECORDER = _Recorder()


def record_latency(*, operation: str, duration_ms: float, ok: bool = True) -> None:
    """Record one latency sample."""
    _RECORDER.record_latency(operation, duration_ms, ok)


@contextmanager
def track_latency(operation: str) -> Iterator[None]:
    """Time the enclosed block; an escaping exception counts as an error."""
    start = perf_counter()
    ok = False
    try:
        yield
        ok = True
    finally:
        record_latency(
            operation=operation,
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


def record_degradation(kind: str) -> None:
    """Count one degraded-but-handled event (e.g. ``search.lexical_fallback``)."""
    _RECORDER.record_degradation(kind)


def latency_metrics_snapshot() -> dict[str, dict[str, float | int]]:
    """Return current in-process latency aggregates."""
    return _RECORDER.latency_snapshot()


def degradation_snapshot() -> dict[str, int]:
    """Return degradation counts keyed by kind."""
    return _RECORDER.degradation_snapshot()


def reset_latency_metrics() -> None:
    """Clear all aggregates (test helper)."""
    _RECORDER.reset()
