# prealert/infra/metrics.py
"""
In-process pipeline metrics, served as JSON at ``GET /metrics``.

Counters and gauges are plain numbers keyed by ``name{label=value,...}``.
Histograms keep a sliding window of recent observations so a worker
that runs for weeks does not grow without bound.
"""
from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict

from prealert.infra.logging_config import get_logger

logger = get_logger(__name__)

HISTOGRAM_WINDOW = 1000


@dataclass
class Counter:
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Recent observations (e.g. step durations) plus a lifetime count."""
    window: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_WINDOW))
    total: int = 0

    def observe(self, value: float) -> None:
        self.window.append(value)
        self.total += 1

    def get_stats(self) -> dict:
        if not self.window:
            return {"count": self.total, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}

        ordered = sorted(self.window)
        n = len(ordered)

        def percentile(p: float) -> float:
            return ordered[min(int(n * p), n - 1)]

        return {
            "count": self.total,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / n,
            "p50": percentile(0.50),
            "p95": percentile(0.95),
        }


class MetricsCollector:
    """Thread-safe registry of counters, gauges and histograms."""

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def set_gauge(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            gauges = dict(self._gauges)
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": histograms,
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def set_gauge(name: str, value: float, **labels) -> None:
    _metrics.set_gauge(name, value, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """
    Time a block and record it with an ``outcome`` label.

        with Timer("workflow_step_seconds", step="get_audio"):
            ...

    records under ``outcome=ok`` or ``outcome=error`` depending on
    whether the block raised.
    """

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None
        self.duration: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is None:
            return
        self.duration = time.perf_counter() - self.start_time
        outcome = "ok" if exc_type is None else "error"
        observe_histogram(self.metric_name, self.duration, outcome=outcome, **self.labels)


class AppMetrics:
    """Pipeline-level metrics tracking"""

    @staticmethod
    def instance_created() -> None:
        inc_counter("workflow_instances_created_total")

    @staticmethod
    def instance_completed() -> None:
        inc_counter("workflow_instances_completed_total")

    @staticmethod
    def instance_failed(step: str) -> None:
        inc_counter("workflow_instances_failed_total", step=step)

    @staticmethod
    def step_completed(step: str) -> None:
        inc_counter("workflow_steps_completed_total", step=step)

    @staticmethod
    def step_failed(step: str, retryable: bool) -> None:
        inc_counter("workflow_steps_failed_total", step=step, retryable=str(retryable).lower())

    @staticmethod
    def alert_insert_duplicate() -> None:
        inc_counter("alert_insert_duplicates_total")

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def worker_batch(claimed: int) -> None:
        set_gauge("workflow_worker_last_batch", claimed)
        if claimed:
            inc_counter("workflow_instances_claimed_total", claimed)

    @staticmethod
    def track_step_time(step: str) -> Timer:
        return Timer("workflow_step_seconds", step=step)
