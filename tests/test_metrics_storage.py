"""
test_metrics_storage.py - Tests for durable request and cache metrics.
"""

import time

import pytest

from bucket_index.config import DEFAULT_PRICING
from bucket_index.errors import DatabaseError, ValidationError
from bucket_index.metrics_storage import RequestEvent


def list_event(**kwargs):
    defaults = dict(operation="ListObjectsV2", category="LIST", duration_ms=100, success=True)
    defaults.update(kwargs)
    return RequestEvent(**defaults)


def days_ago_ms(days: int) -> int:
    return int((time.time() - days * 86400) * 1000)


class TestRequestLog:
    """Requests are appended once and folded into the daily rollup."""

    def test_duplicate_event_counted_once(self, recorder):
        event = list_event()

        assert recorder.record_request(event) is True
        assert recorder.record_request(event) is False

        daily = recorder.get_daily_stats(event.date)
        assert daily.total_requests == 1
        assert daily.list_requests == 1

    def test_running_mean_and_max(self, recorder):
        events = [list_event(duration_ms=d) for d in (100, 200, 600)]
        for event in events:
            recorder.record_request(event)

        daily = recorder.get_daily_stats(events[0].date)
        assert daily.avg_duration_ms == pytest.approx(300.0)
        assert daily.max_duration_ms == 600
        assert daily.successful_requests == 3

    def test_categories_bytes_and_cost(self, recorder):
        recorder.record_request(list_event())
        recorder.record_request(
            list_event(operation="GetObject", category="GET", bytes_transferred=1000)
        )
        recorder.record_request(
            list_event(operation="PutObject", category="PUT", bytes_transferred=500)
        )
        recorder.record_request(
            list_event(success=False, error_category="AccessDenied", error_message="denied")
        )

        daily = recorder.get_daily_stats(list_event().date)
        assert daily.total_requests == 4
        assert daily.failed_requests == 1
        assert (daily.get_requests, daily.put_requests, daily.list_requests) == (1, 1, 2)
        assert daily.bytes_downloaded == 1000
        assert daily.bytes_uploaded == 500
        expected = (
            2 * DEFAULT_PRICING.request_cost("LIST")
            + DEFAULT_PRICING.request_cost("GET")
            + DEFAULT_PRICING.request_cost("PUT")
        )
        assert daily.estimated_cost_usd == pytest.approx(expected)

    def test_unknown_category_rejected(self, recorder):
        with pytest.raises(ValidationError):
            recorder.record_request(list_event(category="HEAD"))

    def test_recompute_matches_incremental(self, recorder):
        for duration in (10, 30, 50, 70):
            recorder.record_request(list_event(duration_ms=duration))
        date = list_event().date
        incremental = recorder.get_daily_stats(date)

        recomputed = recorder.recompute_daily_stats(date)

        assert recomputed.total_requests == incremental.total_requests
        assert recomputed.avg_duration_ms == pytest.approx(incremental.avg_duration_ms)
        assert recomputed.max_duration_ms == incremental.max_duration_ms
        assert recomputed.estimated_cost_usd == pytest.approx(incremental.estimated_cost_usd)


class TestCacheEvents:

    def test_daily_hit_rate(self, recorder):
        for hit in (True, True, True, False):
            event = recorder.record_cache_event("ListObjects", hit)

        stats = recorder.get_daily_cache_stats(event.date)
        assert (stats.hits, stats.misses) == (3, 1)
        assert stats.hit_rate == pytest.approx(75.0)

    def test_empty_day_has_zero_hit_rate(self, recorder):
        assert recorder.get_daily_cache_stats("1999-01-01").hit_rate == 0.0

    def test_summary_efficiency(self, recorder):
        recorder.record_cache_event("ListObjects", True, saved_requests=2)
        recorder.record_cache_event("ListObjects", True, saved_requests=2)
        recorder.record_cache_event("ListObjects", False, saved_requests=0)
        recorder.record_request(list_event())

        summary = recorder.get_cache_summary(days=1)

        assert summary.stats.saved_requests == 4
        assert summary.list_requests == 1
        assert summary.efficiency_percent == pytest.approx(80.0)
        assert summary.cost_saved_usd == pytest.approx(4 * DEFAULT_PRICING.request_cost("LIST"))


class TestBackgroundWriter:

    def test_submitted_events_are_persisted(self, recorder):
        events = [list_event() for _ in range(20)]
        for event in events:
            recorder.submit_request(event)
        recorder.submit_request(events[0])
        cache = recorder.submit_cache_event("ListObjects", True)

        recorder.flush()

        assert recorder.get_daily_stats(events[0].date).total_requests == 20
        assert recorder.get_daily_cache_stats(cache.date).hits == 1

    def test_failed_write_is_retried_until_persisted(self, recorder, monkeypatch):
        attempts = []
        write = recorder.record_request

        def flaky_write(event):
            attempts.append(event.id)
            if len(attempts) == 1:
                raise DatabaseError("database is locked", operation="record_request")
            return write(event)

        monkeypatch.setattr(recorder, "record_request", flaky_write)
        event = list_event()
        recorder.submit_request(event)
        recorder.flush()

        assert attempts == [event.id, event.id]
        assert recorder.get_daily_stats(event.date).total_requests == 1

    def test_gives_up_after_max_write_attempts(self, db_path, store, monkeypatch):
        from bucket_index.metrics_storage import MetricsRecorder

        recorder = MetricsRecorder(db_path, retry_delay=0.01, max_write_attempts=3)
        attempts = []

        def always_locked(event):
            attempts.append(event.id)
            raise DatabaseError("database is locked", operation="record_request")

        monkeypatch.setattr(recorder, "record_request", always_locked)
        try:
            event = list_event()
            recorder.submit_request(event)
            recorder.flush()

            assert len(attempts) == 3
            assert recorder.get_daily_stats(event.date) is None
        finally:
            recorder.close()

    def test_close_drains_queue(self, db_path, store):
        from bucket_index.metrics_storage import MetricsRecorder

        recorder = MetricsRecorder(db_path)
        event = list_event()
        recorder.submit_request(event)
        recorder.close()

        reader = MetricsRecorder(db_path)
        try:
            assert reader.get_daily_stats(event.date).total_requests == 1
        finally:
            reader.close()


class TestBreakdowns:

    def setup_events(self, recorder):
        recorder.record_request(list_event(bucket_name="alpha", duration_ms=10))
        recorder.record_request(list_event(bucket_name="alpha", duration_ms=30))
        recorder.record_request(
            list_event(
                operation="GetBucketAcl",
                category="GET",
                bucket_name="beta",
                success=False,
                error_category="AccessDenied",
                error_message="Access Denied",
            )
        )

    def test_operation_stats(self, recorder):
        self.setup_events(recorder)

        stats = {s.operation: s for s in recorder.get_operation_stats(days=1)}
        assert stats["ListObjectsV2"].count == 2
        assert stats["ListObjectsV2"].avg_duration_ms == pytest.approx(20.0)
        assert stats["GetBucketAcl"].failed == 1

    def test_error_stats(self, recorder):
        self.setup_events(recorder)

        errors = recorder.get_error_stats(days=1)
        assert [(e.error_category, e.count, e.last_message) for e in errors] == [
            ("AccessDenied", 1, "Access Denied")
        ]

    def test_top_buckets(self, recorder):
        self.setup_events(recorder)

        top = recorder.get_top_buckets(days=1, limit=1)
        assert [(b.bucket_name, b.request_count) for b in top] == [("alpha", 2)]

    def test_recent_requests(self, recorder):
        self.setup_events(recorder)

        recent = recorder.get_recent_requests(limit=2)
        assert len(recent) == 2

    def test_storage_info(self, recorder):
        self.setup_events(recorder)
        recorder.record_cache_event("ListObjects", True)

        info = recorder.get_storage_info()
        assert info.request_count == 3
        assert info.cache_event_count == 1
        assert info.daily_stats_count == 1
        assert info.db_size_bytes > 0


class TestRetention:

    def test_purge_old_data(self, recorder):
        old = list_event(timestamp=days_ago_ms(40))
        recent = list_event()
        recorder.record_request(old)
        recorder.record_request(recent)

        removed = recorder.purge_old_data(retention_days=30)

        assert removed == 1
        assert recorder.get_daily_stats(old.date) is None
        assert recorder.get_daily_stats(recent.date).total_requests == 1

    def test_purge_cache_events(self, recorder):
        from bucket_index.metrics_storage import CacheEvent

        old = CacheEvent("ListObjects", True, timestamp=days_ago_ms(40))
        recorder._store_cache_event(old)
        recorder.record_cache_event("ListObjects", True)

        assert recorder.purge_cache_events(retention_days=30) == 1
        assert recorder.get_storage_info().cache_event_count == 1

    def test_clear_all(self, recorder):
        recorder.record_request(list_event())
        recorder.record_cache_event("ListObjects", False)

        recorder.clear_all()

        info = recorder.get_storage_info()
        assert (info.request_count, info.cache_event_count, info.daily_stats_count) == (0, 0, 0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
