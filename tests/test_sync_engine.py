"""
test_sync_engine.py - Tests for paginated, resumable sync jobs.

Tests:
1. Full listings complete and mark the prefix complete
2. Failures keep the last committed continuation token
3. Cancellation discards the in-flight page and resumes cleanly
4. Request budgets end a job as partial
5. Concurrent triggers share one job
"""

import asyncio
import os

import pytest

from bucket_index import EntityStore, SyncEngine
from bucket_index.errors import InvariantViolationError, JobNotFoundError, ValidationError
from bucket_index.store.records import ObjectRecord
from bucket_index.sync.capability import ListingCapability, ListPage
from bucket_index.sync.engine import ALREADY_COMPLETE_REASON, CANCELLED_REASON
from bucket_index.sync.jobs import JobKey, JobState, SyncOptions

from conftest import FakeListing, instant_sleep, make_keys, throttled

P, B = "default", "photos"
ROOT = JobKey(P, B, "")


class AccessDenied(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.response = {"Error": {"Code": "AccessDenied", "Message": message}}


class TruncatedWithoutToken(ListingCapability):
    async def list_page(self, bucket, prefix, continuation_token, page_size):
        return ListPage(objects=[ObjectRecord("a.txt", size=1)], next_token=None, is_truncated=True)


def rows(store):
    return [
        tuple(r)
        for r in store.connection.execute(
            "SELECT key, size FROM objects WHERE profile_id = ? AND bucket_name = ? ORDER BY key",
            (P, B),
        )
    ]


class TestCompletion:

    def test_full_listing_completes(self, store):
        listing = FakeListing(make_keys(2400))
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        result = asyncio.run(engine.run_sync(P, B))

        assert result.status is JobState.COMPLETED
        assert result.is_complete
        assert result.requests_made == 3
        assert result.objects_indexed == 2400
        assert result.objects_count == 2400
        assert result.continuation_token is None
        assert store.is_prefix_complete(P, B, "")
        assert store.aggregate(P, B, "").objects_count == 2400
        assert [c[1] for c in listing.calls] == [None, "1000", "2000"]

    def test_zero_results_complete(self, store):
        engine = SyncEngine(store, FakeListing([]), sleep=instant_sleep)

        result = asyncio.run(engine.run_sync(P, B, "empty/"))

        assert result.status is JobState.COMPLETED
        assert result.objects_count == 0
        assert store.is_prefix_complete(P, B, "empty/")

    def test_complete_prefix_served_from_index(self, store, recorder):
        listing = FakeListing(make_keys(10))
        engine = SyncEngine(store, listing, recorder, sleep=instant_sleep)

        asyncio.run(engine.run_sync(P, B))
        second = asyncio.run(engine.run_sync(P, B))
        recorder.flush()

        assert second.status is JobState.COMPLETED
        assert second.reason == ALREADY_COMPLETE_REASON
        assert second.requests_made == 0
        assert len(listing.calls) == 1
        summary = recorder.get_cache_summary(days=1)
        assert (summary.stats.hits, summary.stats.misses) == (1, 1)

    def test_force_resync_drops_deleted_keys(self, store):
        listing = FakeListing(make_keys(5))
        engine = SyncEngine(store, listing, sleep=instant_sleep)
        asyncio.run(engine.run_sync(P, B))

        del listing.objects["data/file-00001.bin"]
        del listing.objects["data/file-00003.bin"]
        result = asyncio.run(engine.run_sync(P, B, options=SyncOptions(force=True)))

        assert result.status is JobState.COMPLETED
        assert result.objects_count == 3
        assert store.get_object(P, B, "data/file-00001.bin") is None

    def test_prefix_passed_by_root_pass_reports_index_counts(self, store, recorder):
        listing = FakeListing(make_keys(3, "a/") + make_keys(3, "b/"))
        engine = SyncEngine(store, listing, recorder, sleep=instant_sleep)
        asyncio.run(
            engine.run_sync(P, B, options=SyncOptions(max_requests=1, page_size=4))
        )
        assert store.get_prefix_status(P, B, "a/") is None

        result = asyncio.run(engine.run_sync(P, B, "a/", SyncOptions(page_size=2)))
        recorder.flush()

        assert result.reason == ALREADY_COMPLETE_REASON
        assert result.objects_count == 3
        assert result.total_size == 30
        hits = recorder.get_cache_summary(days=1).stats
        assert (hits.hits, hits.saved_requests) == (1, 2)

    def test_sub_prefix_sync(self, store):
        listing = FakeListing(make_keys(3, "a/") + make_keys(4, "b/"))
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        result = asyncio.run(engine.run_sync(P, B, "a/"))

        assert result.objects_count == 3
        assert store.is_prefix_complete(P, B, "a/")
        assert not store.is_prefix_complete(P, B, "")
        assert store.aggregate(P, B, "b/").objects_count == 0


class TestFailures:

    def test_page_two_fails_after_retries(self, store):
        listing = FakeListing(make_keys(2400))
        listing.fail_page("1000", throttled(), throttled(), throttled())
        engine = SyncEngine(store, listing, sleep=instant_sleep)
        options = SyncOptions(max_retries=2)

        result = asyncio.run(engine.run_sync(P, B, options=options))

        assert result.status is JobState.FAILED
        assert result.reason == "Slow down"
        assert result.objects_count == 1000
        assert result.continuation_token == "1000"
        assert store.get_prefix_status(P, B, "").continuation_token == "1000"
        assert not store.is_prefix_complete(P, B, "")
        assert engine.stats.retries == 2

        resumed = asyncio.run(engine.run_sync(P, B))

        assert resumed.status is JobState.COMPLETED
        assert resumed.objects_count == 2400
        assert listing.calls[-2:] == [("", "1000", 1000), ("", "2000", 1000)]

    def test_transient_failures_are_retried_with_backoff(self, store):
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        listing = FakeListing(make_keys(1500))
        listing.fail_page("1000", throttled(), throttled())
        engine = SyncEngine(store, listing, sleep=record_sleep)
        options = SyncOptions(max_retries=5, retry_base_delay=0.5, retry_max_delay=30.0)

        result = asyncio.run(engine.run_sync(P, B, options=options))

        assert result.status is JobState.COMPLETED
        assert delays == [0.5, 1.0]
        assert result.requests_made == 2

    def test_permission_failure_is_verbatim_and_not_retried(self, store):
        listing = FakeListing(make_keys(10))
        listing.fail_page(None, AccessDenied("Access Denied"))
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        result = asyncio.run(engine.run_sync(P, B))

        assert result.status is JobState.FAILED
        assert result.reason == "Access Denied"
        assert len(listing.calls) == 1

    def test_truncated_page_without_token_is_not_committed(self, store):
        engine = SyncEngine(store, TruncatedWithoutToken(), sleep=instant_sleep)

        result = asyncio.run(engine.run_sync(P, B))

        assert result.status is JobState.FAILED
        assert "continuation token" in result.reason
        assert rows(store) == []
        assert not store.is_prefix_complete(P, B, "")

    def test_failures_are_recorded_as_metrics(self, store, recorder):
        listing = FakeListing(make_keys(10))
        listing.fail_page(None, AccessDenied("Access Denied"))
        engine = SyncEngine(store, listing, recorder, sleep=instant_sleep)

        asyncio.run(engine.run_sync(P, B))
        recorder.flush()

        errors = recorder.get_error_stats(days=1)
        assert [(e.error_category, e.count) for e in errors] == [("AccessDenied", 1)]


class TestCancellation:

    def test_cancel_during_page_three_then_resume(self, store):
        listing = FakeListing(make_keys(2400))
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        def cancel_on_third(call_number):
            if call_number == 3:
                assert engine.cancel_sync(ROOT) is True

        listing.before_return = cancel_on_third

        result = asyncio.run(engine.run_sync(P, B))

        assert result.status is JobState.CANCELLED
        assert result.reason == CANCELLED_REASON
        assert result.requests_made == 2
        assert result.objects_count == 2000
        assert result.continuation_token == "2000"
        assert store.get_object(P, B, "data/file-02000.bin") is None

        listing.before_return = None
        resumed = asyncio.run(engine.run_sync(P, B))

        assert resumed.status is JobState.COMPLETED
        assert resumed.requests_made == 1
        assert listing.calls[-1] == ("", "2000", 1000)
        assert resumed.objects_count == 2400

    def test_cancel_during_backoff(self, store):
        listing = FakeListing(make_keys(10))
        listing.fail_page(None, throttled())
        engine = SyncEngine(store, listing)

        async def scenario():
            job = engine.trigger_sync(P, B, options=SyncOptions(retry_base_delay=60.0))
            while not engine.stats.retries:
                await asyncio.sleep(0.01)
            engine.cancel_sync(ROOT)
            return await job.wait()

        result = asyncio.run(scenario())
        assert result.status is JobState.CANCELLED

    def test_cancel_unknown_job(self, store):
        engine = SyncEngine(store, FakeListing([]), sleep=instant_sleep)
        assert engine.cancel_sync(JobKey(P, B, "nope/")) is False
        with pytest.raises(JobNotFoundError):
            engine.get_job(JobKey(P, B, "nope/"))


class TestBudget:

    def test_budget_exhaustion_is_partial(self, store):
        listing = FakeListing(make_keys(2400))
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        result = asyncio.run(engine.run_sync(P, B, options=SyncOptions(max_requests=2)))

        assert result.status is JobState.PARTIAL
        assert "budget" in result.reason
        assert result.requests_made == 2
        assert result.continuation_token == "2000"
        assert not store.is_prefix_complete(P, B, "")

    def test_budget_reached_on_terminal_page_completes(self, store):
        listing = FakeListing(make_keys(2400))
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        result = asyncio.run(engine.run_sync(P, B, options=SyncOptions(max_requests=3)))

        assert result.status is JobState.COMPLETED

    def test_resume_is_equivalent_to_uninterrupted_run(self, store, temp_dir):
        keys = make_keys(2500)
        full = asyncio.run(
            SyncEngine(store, FakeListing(keys), sleep=instant_sleep).run_sync(P, B)
        )

        other = EntityStore(os.path.join(temp_dir, "resumed.db"))
        other.initialize()
        try:
            engine = SyncEngine(other, FakeListing(keys), sleep=instant_sleep)
            partial = asyncio.run(engine.run_sync(P, B, options=SyncOptions(max_requests=1)))
            resumed = asyncio.run(engine.run_sync(P, B))

            assert partial.status is JobState.PARTIAL
            assert resumed.status is JobState.COMPLETED
            assert rows(other) == rows(store)
            assert resumed.objects_count == full.objects_count
            assert resumed.total_size == full.total_size
        finally:
            other.close()


class TestJobs:

    def test_concurrent_triggers_share_one_job(self, store):
        listing = FakeListing(make_keys(2400))
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        async def scenario():
            first = engine.trigger_sync(P, B)
            second = engine.trigger_sync(P, B)
            assert first is second
            assert engine.active_jobs() == [first]
            return await asyncio.gather(first.wait(), second.wait())

        one, two = asyncio.run(scenario())
        assert one == two
        assert len(listing.calls) == 3
        assert engine.stats.jobs_started == 1
        assert engine.active_jobs() == []

    def test_progress_events(self, store):
        seen = []
        engine = SyncEngine(
            store, FakeListing(make_keys(2400)), sleep=instant_sleep, on_progress=seen.append
        )

        async def scenario():
            job = engine.trigger_sync(P, B)
            return [event async for event in job.events()]

        events = asyncio.run(scenario())

        assert events[0].status is JobState.STARTING
        assert events[-1].status is JobState.COMPLETED
        assert events[-1].is_complete
        assert events[-1].objects_indexed == 2400
        assert [e.requests_made for e in events if e.status is JobState.INDEXING] == [0, 1, 2]
        assert seen == events
        assert events[-1].to_dict()["status"] == "completed"

    def test_mark_complete_refused_while_indexing(self, store):
        listing = FakeListing(make_keys(1500))
        engine = SyncEngine(store, listing, sleep=instant_sleep)
        refused = []

        def try_mark_complete(call_number):
            try:
                store.mark_prefix_complete(P, B, "")
            except InvariantViolationError as e:
                refused.append(e)

        listing.before_return = try_mark_complete

        result = asyncio.run(engine.run_sync(P, B))

        assert result.status is JobState.COMPLETED
        assert len(refused) == 2

    def test_invalid_options_rejected(self, store):
        engine = SyncEngine(store, FakeListing([]), sleep=instant_sleep)

        async def scenario():
            engine.trigger_sync(P, B, options=SyncOptions(page_size=0))

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    @pytest.mark.parametrize(
        "bucket,prefix",
        [
            ("ab", ""),
            ("Photos", ""),
            ("192.168.0.1", ""),
            ("photos-", ""),
            ("my..bucket", ""),
            ("my.-bucket", ""),
            (P, "bad\x07prefix/"),
            (P, "x" * 1025),
        ],
    )
    def test_invalid_bucket_or_prefix_rejected(self, store, bucket, prefix):
        listing = FakeListing([])
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        async def scenario():
            engine.trigger_sync(P, bucket, prefix)

        with pytest.raises(ValidationError):
            asyncio.run(scenario())
        assert listing.calls == []

    def test_failing_progress_callback_does_not_block_waiters(self, store):
        def broken_callback(event):
            raise RuntimeError("ui went away")

        engine = SyncEngine(
            store, FakeListing(make_keys(10)), sleep=instant_sleep, on_progress=broken_callback
        )

        async def scenario():
            job = engine.trigger_sync(P, B)
            return await asyncio.wait_for(job.wait(), timeout=5)

        result = asyncio.run(scenario())

        assert result.status is JobState.COMPLETED
        assert result.objects_count == 10
        assert engine.active_jobs() == []


class TestOverlappingJobs:

    def test_root_completion_leaves_running_sub_prefix_job_alone(self, store):
        listing = FakeListing(make_keys(3, "a/") + make_keys(2, "b/"))
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        async def scenario():
            held = asyncio.Event()
            release = asyncio.Event()

            async def hold_second_sub_page(call_number):
                prefix, token, _ = listing.calls[call_number - 1]
                if prefix == "a/" and token == "1":
                    held.set()
                    await release.wait()

            listing.before_return = hold_second_sub_page
            sub = engine.trigger_sync(P, B, "a/", SyncOptions(page_size=1))
            await held.wait()

            root = await engine.run_sync(P, B)
            during = store.get_prefix_status(P, B, "a/")
            state_during = sub.state

            release.set()
            return root, during, state_during, await sub.wait()

        root, during, state_during, sub_result = asyncio.run(scenario())

        assert root.status is JobState.COMPLETED
        assert state_during is JobState.INDEXING
        assert during.is_complete is False
        assert during.continuation_token == "1"
        assert store.is_prefix_complete(P, B, "b/")
        assert sub_result.status is JobState.COMPLETED
        assert sub_result.objects_count == 3
        assert store.is_prefix_complete(P, B, "a/")


class TestBucketSettings:

    def test_settings_refreshed(self, store, recorder):
        listing = FakeListing(make_keys(3))
        listing.acl = '{"Grants": []}'
        listing.versioning = True
        listing.encryption = "AES256"
        engine = SyncEngine(store, listing, recorder, sleep=instant_sleep)

        asyncio.run(engine.run_sync(P, B))
        recorder.flush()

        info = store.get_bucket_info(P, B)
        assert info.versioning_enabled is True
        assert info.encryption_enabled is True
        assert info.default_encryption == "AES256"
        assert info.acl == '{"Grants": []}'
        assert info.initial_index_completed is True
        daily = recorder.get_stats_history(days=1)[-1]
        assert (daily.list_requests, daily.get_requests) == (1, 3)

    def test_settings_failure_is_not_fatal(self, store):
        listing = FakeListing(make_keys(3))
        listing.acl_error = PermissionError("denied")
        listing.versioning = False
        engine = SyncEngine(store, listing, sleep=instant_sleep)

        result = asyncio.run(engine.run_sync(P, B))

        assert result.status is JobState.COMPLETED
        assert store.get_bucket_info(P, B).versioning_enabled is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
