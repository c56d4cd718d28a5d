"""
metrics.py - Runtime observability for the indexer.

Provides:
- Prometheus-compatible in-process metrics
- Structured JSON logging
- Health checks with detailed status

Durable request/cost metrics live in metrics_storage.
"""

import json
import logging
import os
import shutil
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, List

import psutil


# =============================================================================
# Metric Types
# =============================================================================

@dataclass
class MetricValue:
    """Single metric value with labels."""
    name: str
    value: float
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class _LabelledMetric:
    def __init__(self, name: str, help_text: str, labels: List[str] = None):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self._values: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    def get(self, **label_values) -> float:
        """Get current value."""
        key = self._label_key(label_values)
        with self._lock:
            return self._values.get(key, 0)

    def collect(self) -> List[MetricValue]:
        """Collect all values for export."""
        with self._lock:
            return [
                MetricValue(
                    name=self.name,
                    value=value,
                    labels=dict(zip(self.labels, key))
                )
                for key, value in self._values.items()
            ]

    def _label_key(self, label_values: dict) -> tuple:
        return tuple(str(label_values.get(l, "")) for l in self.labels)


class Counter(_LabelledMetric):
    """Prometheus-style counter metric."""

    def inc(self, value: float = 1, **label_values) -> None:
        """Increment counter."""
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value


class Gauge(_LabelledMetric):
    """Prometheus-style gauge metric."""

    def set(self, value: float, **label_values) -> None:
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = value

    def inc(self, value: float = 1, **label_values) -> None:
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value

    def dec(self, value: float = 1, **label_values) -> None:
        self.inc(-value, **label_values)


class Histogram:
    """Prometheus-style histogram metric."""

    DEFAULT_BUCKETS = (
        0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5,
        0.75, 1.0, 2.5, 5.0, 7.5, 10.0, float('inf')
    )

    def __init__(
        self,
        name: str,
        help_text: str,
        labels: List[str] = None,
        buckets: tuple = None
    ):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._values: Dict[tuple, dict] = {}
        self._lock = threading.Lock()

    def observe(self, value: float, **label_values) -> None:
        """Observe a value."""
        key = tuple(str(label_values.get(l, "")) for l in self.labels)

        with self._lock:
            if key not in self._values:
                self._values[key] = {
                    "count": 0,
                    "sum": 0.0,
                    "buckets": {b: 0 for b in self.buckets}
                }

            data = self._values[key]
            data["count"] += 1
            data["sum"] += value

            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    @contextmanager
    def time(self, **label_values):
        """Context manager to time an operation."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, **label_values)

    def count(self, **label_values) -> int:
        key = tuple(str(label_values.get(l, "")) for l in self.labels)
        with self._lock:
            data = self._values.get(key)
            return data["count"] if data else 0

    def collect(self) -> List[MetricValue]:
        """Collect all values for export."""
        results = []

        with self._lock:
            for key, data in self._values.items():
                labels = dict(zip(self.labels, key))
                results.append(MetricValue(
                    name=f"{self.name}_sum", value=data["sum"], labels=labels
                ))
                results.append(MetricValue(
                    name=f"{self.name}_count", value=data["count"], labels=labels
                ))
                for le, count in data["buckets"].items():
                    results.append(MetricValue(
                        name=f"{self.name}_bucket",
                        value=count,
                        labels={**labels, "le": str(le)}
                    ))

        return results


# =============================================================================
# Metrics Registry
# =============================================================================

class MetricsRegistry:
    """Global metrics registry."""

    def __init__(self, prefix: str = "bucket_index"):
        self.prefix = prefix
        self._metrics: Dict[str, Counter | Gauge | Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str, labels: List[str] = None) -> Counter:
        """Register or get a counter metric."""
        full_name = f"{self.prefix}_{name}"
        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = Counter(full_name, help_text, labels)
            return self._metrics[full_name]

    def gauge(self, name: str, help_text: str, labels: List[str] = None) -> Gauge:
        """Register or get a gauge metric."""
        full_name = f"{self.prefix}_{name}"
        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = Gauge(full_name, help_text, labels)
            return self._metrics[full_name]

    def histogram(
        self,
        name: str,
        help_text: str,
        labels: List[str] = None,
        buckets: tuple = None
    ) -> Histogram:
        """Register or get a histogram metric."""
        full_name = f"{self.prefix}_{name}"
        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = Histogram(full_name, help_text, labels, buckets)
            return self._metrics[full_name]

    def collect_all(self) -> List[MetricValue]:
        results = []
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for metric in self.collect_all():
            if metric.labels:
                label_str = ",".join(f'{k}="{v}"' for k, v in metric.labels.items())
                lines.append(f"{metric.name}{{{label_str}}} {metric.value}")
            else:
                lines.append(f"{metric.name} {metric.value}")
        return "\n".join(lines)

    def export_json(self) -> dict:
        """Export metrics as JSON."""
        return {
            "metrics": [
                {
                    "name": m.name,
                    "value": m.value,
                    "labels": m.labels,
                    "timestamp": m.timestamp
                }
                for m in self.collect_all()
            ],
            "exported_at": time.time()
        }


# =============================================================================
# Pre-defined Index Metrics
# =============================================================================

_registry = MetricsRegistry()

pages_fetched_total = _registry.counter(
    "pages_fetched_total",
    "Listing pages fetched and committed",
    labels=["bucket"]
)

objects_indexed_total = _registry.counter(
    "objects_indexed_total",
    "Objects upserted from listing pages",
    labels=["bucket"]
)

remote_retries_total = _registry.counter(
    "remote_retries_total",
    "Transient remote failures that were retried",
    labels=["operation"]
)

sync_jobs_total = _registry.counter(
    "sync_jobs_total",
    "Sync jobs by terminal status",
    labels=["status"]
)

cache_lookups_total = _registry.counter(
    "cache_lookups_total",
    "Index lookups by outcome",
    labels=["operation", "outcome"]
)

active_sync_jobs = _registry.gauge(
    "active_sync_jobs",
    "Sync jobs currently starting or indexing"
)

page_latency_seconds = _registry.histogram(
    "page_latency_seconds",
    "Latency of one listing page request in seconds",
    labels=["operation"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))
)


def get_registry() -> MetricsRegistry:
    """Get the global metrics registry."""
    return _registry


# =============================================================================
# Structured Logging
# =============================================================================

_RESERVED_RECORD_KEYS = frozenset({
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName'
})


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra
        self._hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "hostname": self._hostname
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key not in _RESERVED_RECORD_KEYS:
                    log_data[key] = value

        return json.dumps(log_data, default=str)


class IndexLogger:
    """
    Structured logger for sync jobs.

    Provides convenience methods for common indexing events and keeps
    the in-process metrics in step with them.
    """

    def __init__(self, name: str = "bucket_index.sync"):
        self._logger = logging.getLogger(name)

    def sync_started(self, job_key: str, resumed: bool, max_requests: int) -> None:
        self._logger.info(
            f"Sync started for {job_key}" + (" (resuming)" if resumed else ""),
            extra={
                "event": "sync_started",
                "job_key": job_key,
                "resumed": resumed,
                "max_requests": max_requests
            }
        )
        active_sync_jobs.inc()

    def page_committed(
        self,
        job_key: str,
        bucket: str,
        page_objects: int,
        requests_made: int,
        objects_count: int
    ) -> None:
        self._logger.debug(
            f"Committed page {requests_made} for {job_key}: {page_objects} objects",
            extra={
                "event": "page_committed",
                "job_key": job_key,
                "page_objects": page_objects,
                "requests_made": requests_made,
                "objects_count": objects_count
            }
        )
        pages_fetched_total.inc(bucket=bucket)
        objects_indexed_total.inc(page_objects, bucket=bucket)

    def retry_scheduled(
        self, job_key: str, operation: str, attempt: int, delay: float, error: str
    ) -> None:
        self._logger.warning(
            f"Retrying {operation} for {job_key} in {delay:.2f}s "
            f"(attempt {attempt}): {error}",
            extra={
                "event": "retry_scheduled",
                "job_key": job_key,
                "operation": operation,
                "attempt": attempt,
                "delay_seconds": delay,
                "error": error
            }
        )
        remote_retries_total.inc(operation=operation)

    def sync_finished(
        self,
        job_key: str,
        status: str,
        reason: str,
        objects_indexed: int,
        requests_made: int,
        duration_ms: float,
        was_active: bool = True
    ) -> None:
        level = logging.ERROR if status == "failed" else logging.INFO
        self._logger.log(
            level,
            f"Sync {status} for {job_key}: {reason}",
            extra={
                "event": "sync_finished",
                "job_key": job_key,
                "status": status,
                "reason": reason,
                "objects_indexed": objects_indexed,
                "requests_made": requests_made,
                "duration_ms": duration_ms
            }
        )
        sync_jobs_total.inc(status=status)
        if was_active:
            active_sync_jobs.dec()

    def cache_event(self, operation: str, hit: bool, job_key: str | None = None) -> None:
        self._logger.debug(
            f"Index {'hit' if hit else 'miss'} for {operation}",
            extra={
                "event": "cache_event",
                "operation": operation,
                "hit": hit,
                "job_key": job_key
            }
        )
        cache_lookups_total.inc(operation=operation, outcome="hit" if hit else "miss")


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: str = None
) -> None:
    """
    Configure logging for production.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatting
        log_file: Optional log file path
    """
    handlers = []

    console = logging.StreamHandler()
    if json_format:
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
    handlers.append(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True
    )


# =============================================================================
# Health Checks
# =============================================================================

@dataclass
class HealthStatus:
    """Health check status."""
    healthy: bool
    checks: Dict[str, dict]
    timestamp: float = field(default_factory=time.time)


class HealthChecker:
    """
    Health checker for an index deployment.

    Supports:
    - Database connectivity and integrity
    - Disk headroom for the database file
    - Process memory
    """

    def __init__(self):
        self._checks: Dict[str, Callable[[], dict]] = {}

    def register_check(self, name: str, check_fn: Callable[[], dict]) -> None:
        """
        Register a health check.

        Check function should return:
        {"healthy": bool, "message": str, ...}
        """
        self._checks[name] = check_fn

    def check_all(self) -> HealthStatus:
        """Run all health checks."""
        results = {}
        all_healthy = True

        for name, check_fn in self._checks.items():
            try:
                result = check_fn()
            except Exception as e:
                result = {"healthy": False, "message": f"Check failed: {e}"}
            results[name] = result
            if not result.get("healthy", False):
                all_healthy = False

        return HealthStatus(healthy=all_healthy, checks=results)

    def check_database(self, conn: sqlite3.Connection) -> dict:
        """Check database connectivity and integrity."""
        try:
            start = time.perf_counter()
            conn.execute("SELECT 1").fetchone()
            latency_ms = (time.perf_counter() - start) * 1000
            integrity = conn.execute("PRAGMA quick_check").fetchone()[0]
        except sqlite3.Error as e:
            return {"healthy": False, "message": f"Database error: {e}"}

        return {
            "healthy": integrity == "ok",
            "message": "Database connected" if integrity == "ok" else f"Integrity: {integrity}",
            "latency_ms": latency_ms
        }

    def check_memory(self, threshold_mb: int = 1000) -> dict:
        """Check resident memory of this process."""
        process = psutil.Process()
        memory_mb = process.memory_info().rss / 1024 / 1024
        return {
            "healthy": memory_mb < threshold_mb,
            "message": f"Memory usage: {memory_mb:.1f} MB",
            "memory_mb": memory_mb,
            "threshold_mb": threshold_mb
        }

    def check_disk(self, path: str = ".", threshold_percent: int = 90) -> dict:
        """Check disk space."""
        try:
            total, used, free = shutil.disk_usage(path)
        except OSError as e:
            return {"healthy": False, "message": f"Disk check failed: {e}"}

        used_percent = (used / total) * 100
        return {
            "healthy": used_percent < threshold_percent,
            "message": f"Disk usage: {used_percent:.1f}%",
            "used_percent": used_percent,
            "free_bytes": free
        }


def build_health_checker(conn: sqlite3.Connection, db_path: str) -> HealthChecker:
    """Health checker wired to one index database."""
    checker = HealthChecker()
    checker.register_check("database", lambda: checker.check_database(conn))
    directory = os.path.dirname(os.path.abspath(db_path)) or "."
    checker.register_check("disk", lambda: checker.check_disk(directory))
    checker.register_check("memory", checker.check_memory)
    return checker
