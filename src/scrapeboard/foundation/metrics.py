"""Metrics collection and monitoring for the Scrapeboard system."""

import os
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional, Deque

import psutil

from .clock import utcnow
from .logging import get_logger


@dataclass
class MetricValue:
    """Individual metric value with timestamp."""
    value: float
    timestamp: datetime = field(default_factory=utcnow)
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricSummary:
    """Summary statistics for a metric."""
    name: str
    count: int
    sum: float
    min: float
    max: float
    avg: float
    latest: float
    latest_timestamp: datetime

    @classmethod
    def from_values(cls, name: str, values: List[MetricValue]) -> "MetricSummary":
        """Create summary from list of metric values."""
        if not values:
            return cls(name=name, count=0, sum=0.0, min=0.0, max=0.0, avg=0.0,
                       latest=0.0, latest_timestamp=utcnow())

        numeric_values = [v.value for v in values]
        return cls(
            name=name,
            count=len(values),
            sum=sum(numeric_values),
            min=min(numeric_values),
            max=max(numeric_values),
            avg=sum(numeric_values) / len(numeric_values),
            latest=values[-1].value,
            latest_timestamp=values[-1].timestamp,
        )


class MetricsCollector:
    """Collects and aggregates system metrics."""

    def __init__(self, max_values_per_metric: int = 1000):
        self.logger = get_logger(__name__)
        self.max_values_per_metric = max_values_per_metric

        self._metrics: Dict[str, Deque[MetricValue]] = defaultdict(
            lambda: deque(maxlen=self.max_values_per_metric)
        )
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = defaultdict(float)

        self._lock = Lock()
        self._start_time = utcnow()

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        timestamp: Optional[datetime] = None
    ) -> None:
        """Record a metric value."""
        metric_value = MetricValue(value=value, timestamp=timestamp or utcnow(), tags=tags or {})
        with self._lock:
            self._metrics[name].append(metric_value)

    def increment_counter(
        self,
        name: str,
        value: float = 1.0,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Increment a counter metric."""
        with self._lock:
            self._counters[name] += value
            current = self._counters[name]
        self.record_metric(name, current, tags)

    def set_gauge(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Set a gauge metric value."""
        with self._lock:
            self._gauges[name] = value
        self.record_metric(name, value, tags)

    def record_timing(
        self,
        name: str,
        duration: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Record a timing metric in seconds."""
        self.record_metric(f"{name}.duration", duration, tags)
        self.increment_counter(f"{name}.count", tags=tags)

    @contextmanager
    def timer(self, name: str, tags: Optional[Dict[str, str]] = None):
        """Context manager for timing operations.

        Usage:
            with metrics.timer("operation_name"):
                # perform operation
                pass
        """
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(name, time.perf_counter() - start_time, tags)

    def get_metric_summary(self, name: str) -> Optional[MetricSummary]:
        """Get summary statistics for a metric."""
        with self._lock:
            if name not in self._metrics:
                return None
            values = list(self._metrics[name])
        return MetricSummary.from_values(name, values)

    def get_counter_value(self, name: str) -> float:
        """Get current counter value."""
        with self._lock:
            return self._counters.get(name, 0.0)

    def get_gauge_value(self, name: str) -> float:
        """Get current gauge value."""
        with self._lock:
            return self._gauges.get(name, 0.0)

    def get_system_metrics(self) -> Dict[str, Any]:
        """Get process-level metrics for the workers panel."""
        current_time = utcnow()
        uptime = current_time - self._start_time

        try:
            process = psutil.Process(os.getpid())
            return {
                "uptime_seconds": uptime.total_seconds(),
                "memory_usage_mb": process.memory_info().rss / 1024 / 1024,
                "cpu_percent": process.cpu_percent(),
                "threads": process.num_threads(),
                "system_memory_percent": psutil.virtual_memory().percent,
                "system_cpu_percent": psutil.cpu_percent(),
                "timestamp": current_time.isoformat(),
            }
        except psutil.Error as e:
            self.logger.warning(f"Failed to collect system metrics: {e}")
            return {
                "uptime_seconds": uptime.total_seconds(),
                "timestamp": current_time.isoformat(),
                "error": str(e),
            }

    def get_business_metrics(self) -> Dict[str, Any]:
        """Get job, worker and event counters."""
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)

        business_metrics = {
            "jobs_created": counters.get("jobs.created", 0.0),
            "jobs_claimed": counters.get("jobs.claimed", 0.0),
            "jobs_succeeded": counters.get("jobs.succeeded", 0.0),
            "jobs_failed": counters.get("jobs.failed", 0.0),
            "jobs_retried": counters.get("jobs.retried", 0.0),
            "jobs_cancelled": counters.get("jobs.cancelled", 0.0),
            "worker_timeouts": counters.get("workers.timeouts", 0.0),
            "events_dropped": counters.get("events.dropped", 0.0),
            "fetch_requests": counters.get("fetch.requests", 0.0),
            "fetch_errors": counters.get("fetch.errors", 0.0),
            "records_persisted": counters.get("records.persisted", 0.0),
            "queue_depth": gauges.get("queue.depth", 0.0),
            "workers_size": gauges.get("workers.size", 0.0),
            "workers_busy": gauges.get("workers.busy", 0.0),
        }

        finished = business_metrics["jobs_succeeded"] + business_metrics["jobs_failed"]
        if finished > 0:
            business_metrics["success_rate"] = business_metrics["jobs_succeeded"] / finished

        return business_metrics

    def get_performance_metrics(self) -> Dict[str, Any]:
        """Get timing summaries for the job pipeline."""
        performance_metrics = {}
        for metric_name in ("fetch.duration", "extraction.duration", "persist.duration", "job.duration"):
            summary = self.get_metric_summary(metric_name)
            if summary and summary.count > 0:
                performance_metrics[metric_name] = {
                    "avg_ms": summary.avg * 1000,
                    "min_ms": summary.min * 1000,
                    "max_ms": summary.max * 1000,
                    "count": summary.count,
                    "latest_ms": summary.latest * 1000,
                }
        return performance_metrics

    def export_metrics(self, include_system: bool = True) -> Dict[str, Any]:
        """Export all metrics as a dictionary."""
        metrics: Dict[str, Any] = {
            "timestamp": utcnow().isoformat(),
            "business": self.get_business_metrics(),
            "performance": self.get_performance_metrics(),
        }
        if include_system:
            metrics["system"] = self.get_system_metrics()
        return metrics


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def timer(name: str, tags: Optional[Dict[str, str]] = None):
    """Context manager for timing operations."""
    return get_metrics_collector().timer(name, tags)
