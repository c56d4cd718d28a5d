"""
test_metrics.py - Tests for in-process metrics, logging and health checks.
"""

import json
import logging

import pytest

from bucket_index.metrics import (
    HealthChecker,
    IndexLogger,
    JSONFormatter,
    MetricsRegistry,
    build_health_checker,
    cache_lookups_total,
    get_registry,
)


class TestRegistry:

    def test_counter_and_gauge(self):
        registry = MetricsRegistry(prefix="test")
        pages = registry.counter("pages_total", "Pages", ["bucket"])
        active = registry.gauge("active", "Active jobs")

        pages.inc(bucket="a")
        pages.inc(2, bucket="a")
        active.inc()
        active.inc()
        active.dec()

        assert pages.get(bucket="a") == 3
        assert active.get() == 1
        assert registry.counter("pages_total", "Pages", ["bucket"]) is pages

    def test_histogram(self):
        registry = MetricsRegistry(prefix="test")
        latency = registry.histogram("latency", "Latency", ["operation"], buckets=(0.1, 1.0))

        latency.observe(0.05, operation="list")
        latency.observe(0.5, operation="list")
        with latency.time(operation="list"):
            pass

        assert latency.count(operation="list") == 3

    def test_prometheus_export(self):
        registry = MetricsRegistry(prefix="test")
        registry.counter("pages_total", "Pages", ["bucket"]).inc(bucket="photos")

        assert 'test_pages_total{bucket="photos"} 1' in registry.export_prometheus()
        exported = registry.export_json()
        assert exported["metrics"][0]["name"] == "test_pages_total"

    def test_cache_events_counted(self):
        before = cache_lookups_total.get(operation="ListObjects", outcome="hit")
        IndexLogger().cache_event("ListObjects", True)
        assert cache_lookups_total.get(operation="ListObjects", outcome="hit") == before + 1
        assert "bucket_index_cache_lookups_total" in get_registry().export_prometheus()


class TestJSONFormatter:

    def test_extra_fields_included(self):
        record = logging.LogRecord("bucket_index.sync", logging.INFO, __file__, 1, "done", None, None)
        record.job_key = "default:photos/"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "done"
        assert data["level"] == "INFO"
        assert data["job_key"] == "default:photos/"

    def test_sync_finished_logs_reason(self, caplog):
        with caplog.at_level(logging.INFO, logger="bucket_index.sync"):
            IndexLogger().sync_finished(
                "default:photos/", "partial", "Request budget of 2 exhausted", 2000, 2, 10.0,
                was_active=False,
            )

        assert "Request budget of 2 exhausted" in caplog.text
        assert caplog.records[-1].status == "partial"


class TestHealthChecker:

    def test_all_checks_run(self, store, db_path):
        status = build_health_checker(store.connection, db_path).check_all()

        assert set(status.checks) == {"database", "disk", "memory"}
        assert status.checks["database"]["healthy"] is True

    def test_failing_check_marks_unhealthy(self):
        checker = HealthChecker()

        def broken():
            raise RuntimeError("boom")

        checker.register_check("ok", lambda: {"healthy": True})
        checker.register_check("broken", broken)
        status = checker.check_all()

        assert status.healthy is False
        assert "boom" in status.checks["broken"]["message"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
