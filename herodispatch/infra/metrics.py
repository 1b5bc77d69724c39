# herodispatch/infra/metrics.py
"""
In-process metrics.

Counters and histograms keyed by name plus sorted labels, e.g.
``job_accepts_total{outcome=won}``. Values are per process; each replica
reports its own at ``GET /metrics``.
"""
from __future__ import annotations

import time
from collections import deque
from contextlib import contextmanager
from threading import Lock
from typing import Iterator

from herodispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# Percentiles are computed over the most recent observations only
HISTOGRAM_WINDOW = 1000


class Histogram:
    """Running count/min/max/sum plus a bounded window for percentiles"""

    def __init__(self, window: int = HISTOGRAM_WINDOW):
        self.count = 0
        self.total = 0.0
        self.min: float | None = None
        self.max: float | None = None
        self._recent: deque[float] = deque(maxlen=window)

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        self._recent.append(value)

    def snapshot(self) -> dict:
        if not self.count:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0, "p99": 0}

        recent = sorted(self._recent)

        def pct(p: float) -> float:
            return recent[min(int(len(recent) * p), len(recent) - 1)]

        return {
            "count": self.count,
            "min": self.min,
            "max": self.max,
            "avg": self.total / self.count,
            "p50": pct(0.50),
            "p95": pct(0.95),
            "p99": pct(0.99),
        }


class MetricsCollector:
    def __init__(self):
        self._counters: dict[str, int] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = Lock()

    @staticmethod
    def key(name: str, labels: dict | None = None) -> str:
        if not labels:
            return name
        rendered = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{rendered}}}"

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self.key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self.key(name, labels)
        with self._lock:
            histogram = self._histograms.get(key)
            if histogram is None:
                histogram = self._histograms[key] = Histogram()
            histogram.observe(value)

    def get_counter(self, name: str, **labels) -> int:
        """Current value of a counter (0 if never incremented)"""
        with self._lock:
            return self._counters.get(self.key(name, labels), 0)

    def get_metrics(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "histograms": {k: h.snapshot() for k, h in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Process-wide collector"""
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels)


@contextmanager
def timed(metric_name: str, **labels) -> Iterator[None]:
    """Record the wall time of the block in seconds, also when it raises"""
    started = time.monotonic()
    try:
        yield
    finally:
        observe_histogram(metric_name, time.monotonic() - started, **labels)


class DispatchMetrics:
    """Names of the dispatch counters, in one place"""

    @staticmethod
    def dispatch_started() -> None:
        inc_counter("dispatch_started_total")

    @staticmethod
    def dispatch_finished(result: str) -> None:
        inc_counter("dispatch_finished_total", result=result)

    @staticmethod
    def wave_started(wave: int) -> None:
        inc_counter("dispatch_waves_total", wave=wave)

    @staticmethod
    def heroes_notified(count: int) -> None:
        if count:
            inc_counter("heroes_notified_total", count)

    @staticmethod
    def notification_failed(kind: str) -> None:
        inc_counter("notifications_failed_total", kind=kind)

    @staticmethod
    def candidate_lookup_failed() -> None:
        inc_counter("candidate_lookup_failures_total")

    @staticmethod
    def accept(outcome: str) -> None:
        inc_counter("job_accepts_total", outcome=outcome)

    @staticmethod
    def decline() -> None:
        inc_counter("job_declines_total")

    @staticmethod
    def store_error(operation: str) -> None:
        inc_counter("store_errors_total", operation=operation)

    @staticmethod
    def track_dispatch_time():
        return timed("dispatch_duration_seconds")
