"""Dispatcher metrics instrumentation.

In-process, zero-dependency metrics collector tracking:
  - Pipeline outcomes by kind (published, unchanged, not_due, ...)
  - Side-effect counters (renames, rename corrections, retractions, publishes)
  - Latency histograms for a single activity reconciliation and for a
    whole inbound notification

One collector is owned by the reconciliation engine. Snapshots are exported
as plain dicts on /metrics.

Thread-safety: the collector is mutated from coroutines on one event loop
without awaiting in between, so no lock is taken.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator


# ---------------------------------------------------------------------------
# Histogram implementation
# ---------------------------------------------------------------------------

# Fixed upper-bound buckets in milliseconds.
_LATENCY_BUCKETS_MS: tuple[float, ...] = (
    5, 10, 25, 50, 100, 200, 500, 1_000, 2_000, 5_000,
    10_000, 30_000, float("inf"),
)


@dataclass
class Histogram:
    """Lightweight latency histogram backed by fixed buckets + running stats."""

    name: str
    _buckets: list[int] = field(default_factory=lambda: [0] * len(_LATENCY_BUCKETS_MS))
    _count: int = 0
    _sum_ms: float = 0.0
    _max_ms: float = 0.0

    def record(self, value_ms: float) -> None:
        self._count += 1
        self._sum_ms += value_ms
        self._max_ms = max(self._max_ms, value_ms)
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            if value_ms <= bound:
                self._buckets[i] += 1
                break

    @property
    def count(self) -> int:
        return self._count

    @property
    def mean_ms(self) -> float:
        return self._sum_ms / self._count if self._count else 0.0

    def percentile(self, p: float) -> float:
        """Estimate percentile via linear interpolation across buckets."""
        if self._count == 0:
            return 0.0
        target = math.ceil(p / 100 * self._count)
        cumulative = 0
        prev_bound = 0.0
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            cumulative += self._buckets[i]
            if cumulative >= target:
                bucket_count = self._buckets[i]
                frac = (target - (cumulative - bucket_count)) / bucket_count
                upper = bound if not math.isinf(bound) else self._max_ms
                return prev_bound + frac * (upper - prev_bound)
            prev_bound = bound
        return self._max_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self._count,
            "mean_ms": round(self.mean_ms, 2),
            "max_ms": round(self._max_ms, 2),
            "p50_ms": round(self.percentile(50), 2),
            "p95_ms": round(self.percentile(95), 2),
        }


# ---------------------------------------------------------------------------
# MetricsCollector
# ---------------------------------------------------------------------------

class MetricsCollector:
    """Metrics registry for one reconciliation engine.

    Counters:
        notifications_total[entity]     Inbound notifications accepted
        dedup_dropped_total             Notifications dropped as redeliveries
        outcomes_total[outcome]         Per-activity pipeline results
        renames_total                   Subject rewrites issued
        retractions_total               Tracked posts retracted
        pipeline_errors_total           Unhandled notification failures

    Histograms (milliseconds):
        activity_latency_ms             One activity reconciliation
        notification_latency_ms         A whole inbound notification
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._labeled_counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: dict[str, Histogram] = {
            "activity_latency_ms": Histogram("activity_latency_ms"),
            "notification_latency_ms": Histogram("notification_latency_ms"),
        }
        self._started_at: float = time.monotonic()

    def inc(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        self._labeled_counters[name][label] += value

    def record(self, histogram: str, value_ms: float) -> None:
        if histogram in self._histograms:
            self._histograms[histogram].record(value_ms)

    def counter(self, name: str, label: str | None = None) -> int:
        if label is None:
            return self._counters.get(name, 0)
        return self._labeled_counters.get(name, {}).get(label, 0)

    @contextmanager
    def timer(self, histogram: str) -> Iterator[None]:
        """Context manager that records elapsed ms, including across awaits."""
        t0 = time.monotonic()
        try:
            yield
        finally:
            self.record(histogram, (time.monotonic() - t0) * 1000)

    def snapshot(self) -> dict[str, Any]:
        return {
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
            "counters": dict(self._counters),
            "labeled_counters": {k: dict(v) for k, v in self._labeled_counters.items()},
            "histograms": {k: v.to_dict() for k, v in self._histograms.items()},
        }

    def reset_all(self) -> None:
        """Reset all metrics — intended for tests only."""
        self._counters.clear()
        self._labeled_counters.clear()
        for name in self._histograms:
            self._histograms[name] = Histogram(name)
