"""Lightweight in-process observability helpers.

Latency aggregates per operation plus plain outcome counters (resolution
kinds, maintenance results).  Both are process-local and reset-able for
tests.
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


class _Recorder:
    def __init__(self) -> None:
        self._lock = Lock()
        self._latency: dict[str, LatencySummary] = {}
        self._outcomes: Counter[str] = Counter()

    def record_latency(self, operation: str, duration_ms: float, ok: bool) -> None:
        normalized = max(float(duration_ms), 0.0)
        with self._lock:
            self._latency.setdefault(operation, LatencySummary()).add(normalized, ok)
        logger.debug(
            "latency operation=%s duration_ms=%.3f ok=%s",
            operation,
            normalized,
            ok,
        )

    def record_outcome(self, name: str, amount: int) -> None:
        if amount <= 0:
            return
        with self._lock:
            self._outcomes[name] += amount

    def latency_snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            return {
                operation: {
                    "count": summary.count,
                    "error_count": summary.error_count,
                    "total_ms": round(summary.total_ms, 3),
                    "avg_ms": round(
                        summary.total_ms / summary.count if summary.count else 0.0,
                        3,
                    ),
                    "min_ms": round(summary.min_ms, 3),
                    "max_ms": round(summary.max_ms, 3),
                    "last_ms": round(summary.last_ms, 3),
                }
                for operation, summary in sorted(self._latency.items())
            }

    def outcome_snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._outcomes.items()))

    def reset(self) -> None:
        with self._lock:
            self._latency.clear()
            self._outcomes.clear()


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
        _RECORDER.record_latency(operation, (perf_counter() - start) * 1000, ok)


def record_outcome(name: str, amount: int = 1) -> None:
    """Increment the counter *name* by *amount* (non-positive amounts ignored)."""
    _RECORDER.record_outcome(name, amount)


def latency_metrics_snapshot() -> dict[str, dict[str, float | int]]:
    """Return current in-process latency aggregates."""
    return _RECORDER.latency_snapshot()


def outcome_counts_snapshot() -> dict[str, int]:
    """Return current outcome counters."""
    return _RECORDER.outcome_snapshot()


def reset_latency_metrics() -> None:
    """Clear all aggregates and counters (test helper)."""
    _RECORDER.reset()
