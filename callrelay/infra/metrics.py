# callrelay/infra/metrics.py
"""
In-process counters and histograms, served as JSON on /metrics.

Series are keyed ``name{label=value,...}`` with labels sorted, e.g.
``call_notifications_total{outcome=sent,type=call_ringing}``.
"""
from __future__ import annotations

import time
from collections import Counter as _Tally
from threading import Lock

from callrelay.infra.logging_config import get_logger

logger = get_logger(__name__)

# Per-series cap on retained histogram samples; older samples are dropped.
MAX_SAMPLES = 10_000


def _series_key(name: str, labels: dict | None) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


def _summarize(samples: list[float]) -> dict:
    if not samples:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "p95": ordered[min(int(n * 0.95), n - 1)],
        "p99": ordered[min(int(n * 0.99), n - 1)],
    }


class MetricsCollector:
    def __init__(self):
        self._counters: _Tally[str] = _Tally()
        self._samples: dict[str, list[float]] = {}
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = _series_key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = _series_key(name, labels)
        with self._lock:
            samples = self._samples.setdefault(key, [])
            samples.append(value)
            if len(samples) > MAX_SAMPLES:
                del samples[: len(samples) - MAX_SAMPLES]

    def get_metrics(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
            samples = {k: list(v) for k, v in self._samples.items()}
        return {
            "counters": counters,
            "histograms": {k: _summarize(v) for k, v in samples.items()},
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._samples.clear()
        logger.info("Metrics reset")


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Observe the wall time of a block in seconds, also when it raises."""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self._started: float | None = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is not None:
            observe_histogram(self.metric_name, time.perf_counter() - self._started, **self.labels)


class NotificationMetrics:
    """Series emitted by the notification pipeline."""

    @staticmethod
    def notification_sent(notification_type: str) -> None:
        inc_counter("call_notifications_total", type=notification_type, outcome="sent")

    @staticmethod
    def notification_failed(notification_type: str) -> None:
        inc_counter("call_notifications_total", type=notification_type, outcome="failed")

    @staticmethod
    def status_suppressed(status: str, reason: str) -> None:
        inc_counter("call_status_suppressed_total", status=status, reason=reason)

    @staticmethod
    def calls_evicted(count: int, trigger: str) -> None:
        if count:
            inc_counter("tracked_calls_evicted_total", count, trigger=trigger)

    @staticmethod
    def poll_error() -> None:
        inc_counter("notification_poll_errors_total")

    @staticmethod
    def track_dispatch_time(notification_type: str) -> Timer:
        return Timer("notification_dispatch_seconds", type=notification_type)
