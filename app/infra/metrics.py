# app/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from dataclasses import dataclass, field
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Counter:
    """Simple counter metric"""
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


# Keep the most recent samples only; /metrics stats describe recent behaviour
HISTOGRAM_WINDOW = 1000


@dataclass
class Histogram:
    """Track distribution of recent values (fan-out durations, request latency)"""
    values: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_WINDOW))
    total_count: int = 0

    def observe(self, value: float) -> None:
        self.values.append(value)
        self.total_count += 1

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "window": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0, "p99": 0}

        sorted_values = sorted(self.values)
        window = len(sorted_values)

        def percentile(p: float) -> float:
            return sorted_values[min(int(window * p), window - 1)]

        return {
            "count": self.total_count,
            "window": window,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / window,
            "p50": percentile(0.50),
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


class MetricsCollector:
    """
    Lightweight in-process metrics collection.
    Exposed as JSON on /metrics.
    """

    def __init__(self):
        self._counters: dict[str, Counter] = defaultdict(Counter)
        self._histograms: dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_counter(self, name: str, **labels) -> int:
        """Read a single counter value (0 if never incremented)"""
        key = self._make_key(name, labels or None)
        with self._lock:
            counter = self._counters.get(key)
            return counter.value if counter else 0

    def get_metrics(self) -> dict:
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
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
    """Get the global metrics collector"""
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Context manager to time operations"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.time() - self.start_time
            observe_histogram(self.metric_name, duration, **self.labels)


class AppMetrics:
    """Dispatch-level metrics tracking"""

    @staticmethod
    def help_requested() -> None:
        inc_counter("help_requests_total")

    @staticmethod
    def volunteer_notified() -> None:
        inc_counter("volunteer_notifications_sent_total")

    @staticmethod
    def volunteer_notify_failed() -> None:
        inc_counter("volunteer_notifications_failed_total")

    @staticmethod
    def response_created() -> None:
        inc_counter("responses_created_total")

    @staticmethod
    def transition(operation: str, outcome: str) -> None:
        inc_counter("assignment_transitions_total", operation=operation, outcome=outcome)

    @staticmethod
    def event_emit_failed(event: str) -> None:
        inc_counter("notification_emit_failures_total", event=event)

    @staticmethod
    def rating_submitted() -> None:
        inc_counter("ratings_submitted_total")

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def http_request(method: str, status_code: int, duration_ms: float) -> None:
        inc_counter("http_requests_total", method=method, status=f"{status_code // 100}xx")
        observe_histogram("http_request_duration_ms", duration_ms, method=method)

    @staticmethod
    def track_fanout_time() -> Timer:
        return Timer("help_request_fanout_seconds")
