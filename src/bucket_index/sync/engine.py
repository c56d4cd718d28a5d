"""
engine.py - Paginated, resumable, cancellable bucket listing.

One asyncio task per job key. Database work runs in the default
executor so the event loop never blocks on SQLite; remote calls go
through the injected ListingCapability.

Example:
    engine = SyncEngine(store, capability, recorder)
    result = await engine.run_sync("default", "photos", "2024/")
    print(result.status, result.reason)
"""

import asyncio
import functools
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from bucket_index.config import (
    ACL_CACHE_TTL_SECONDS,
    OPERATION_GET_BUCKET_ACL,
    OPERATION_GET_BUCKET_ENCRYPTION,
    OPERATION_GET_BUCKET_VERSIONING,
    OPERATION_LIST_OBJECTS,
)
from bucket_index.errors import RemoteError
from bucket_index.keys import normalize_prefix, validate_bucket_name, validate_key
from bucket_index.metrics import IndexLogger, page_latency_seconds
from bucket_index.metrics_storage import MetricsRecorder, RequestEvent
from bucket_index.store.entity_store import EntityStore
from bucket_index.sync.capability import ListingCapability, ListPage
from bucket_index.sync.jobs import (
    EngineStats,
    JobKey,
    JobResult,
    JobState,
    ProgressEvent,
    SyncJob,
    SyncOptions,
)
from bucket_index.sync.registry import JobRegistry
from bucket_index.sync.retry import classify_remote_error, error_category

logger = logging.getLogger(__name__)

CACHE_OPERATION = "ListObjects"

CANCELLED_REASON = "Cancelled by user"
ALREADY_COMPLETE_REASON = "Served from index: prefix already complete"
MISSING_TOKEN_REASON = "Remote listing reported truncation without a continuation token"

_CANCELLED = object()


@dataclass
class _RunState:
    """Counters of one job run."""
    objects_indexed: int = 0
    requests_made: int = 0
    started_at: float = field(default_factory=time.time)
    logged_start: bool = False


class SyncEngine:
    """
    Drives sync jobs against an entity store.

    Args:
        store: Entity store; its registry tracks in-flight jobs
        capability: Authenticated remote listing client
        recorder: Optional metrics recorder for request and cache events
        sleep: Awaitable sleep used for retry backoff, injectable for tests
        on_progress: Called with every ProgressEvent of every job
    """

    def __init__(
        self,
        store: EntityStore,
        capability: ListingCapability,
        recorder: MetricsRecorder | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_progress: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self.store = store
        self.capability = capability
        self.recorder = recorder
        self.on_progress = on_progress
        self.stats = EngineStats()
        self._sleep = sleep
        self._index_logger = IndexLogger()

    @property
    def registry(self) -> JobRegistry:
        return self.store.registry

    # =========================================================================
    # Public API
    # =========================================================================

    def trigger_sync(
        self,
        profile_id: str,
        bucket_name: str,
        prefix: str = "",
        options: SyncOptions | None = None,
    ) -> SyncJob:
        """
        Start a sync job, or attach to the one already running for the key.

        Must be called from a running event loop. Options of an attached
        trigger are ignored.

        Raises:
            ValidationError: Invalid options, bucket name or prefix
        """
        options = options or SyncOptions()
        options.validate()
        validate_bucket_name(bucket_name)
        prefix = normalize_prefix(prefix)
        if prefix:
            validate_key(prefix, field="prefix")
        key = JobKey(profile_id, bucket_name, prefix)

        job, created = self.registry.get_or_create(key, lambda: SyncJob(key, options))
        if created:
            self.stats.jobs_started += 1
            job.task = asyncio.create_task(self._run(job), name=f"sync:{key}")
        else:
            logger.debug(f"Attached to running sync job {key}")
        return job

    async def run_sync(
        self,
        profile_id: str,
        bucket_name: str,
        prefix: str = "",
        options: SyncOptions | None = None,
    ) -> JobResult:
        """Trigger a sync and wait for its terminal result."""
        job = self.trigger_sync(profile_id, bucket_name, prefix, options)
        return await job.wait()

    def cancel_sync(self, key: JobKey) -> bool:
        """
        Request cancellation of a running job.

        Returns:
            False if no job is running for the key
        """
        job = self.registry.get(key)
        if job is None or job.done():
            return False
        job.cancel()
        logger.info(f"Cancellation requested for {key}")
        return True

    def get_job(self, key: JobKey) -> SyncJob:
        """
        Raises:
            JobNotFoundError: No job registered for the key
        """
        return self.registry.require(key)

    def active_jobs(self) -> list[SyncJob]:
        return self.registry.active()

    async def shutdown(self) -> None:
        """Cancel every running job and wait for all of them to end."""
        jobs = self.active_jobs()
        for job in jobs:
            job.cancel()
        await asyncio.gather(*(job.wait() for job in jobs))

    # =========================================================================
    # Job lifecycle
    # =========================================================================

    async def _run(self, job: SyncJob) -> None:
        run = _RunState()
        status, reason = JobState.FAILED, "Sync job ended unexpectedly"
        try:
            status, reason = await self._execute(job, run)
        except RemoteError as e:
            status, reason = JobState.FAILED, e.message
        except asyncio.CancelledError:
            status, reason = JobState.CANCELLED, CANCELLED_REASON
            raise
        except Exception as e:
            logger.exception(f"Sync job {job.key} failed")
            status, reason = JobState.FAILED, str(e)
        finally:
            await self._finish(job, run, status, reason)

    async def _finish(
        self, job: SyncJob, run: _RunState, status: JobState, reason: str
    ) -> None:
        prefix_status, totals = None, None
        try:
            prefix_status = await self._in_executor(
                self.store.get_prefix_status,
                job.key.profile_id,
                job.key.bucket_name,
                job.key.prefix,
            )
            if prefix_status is None:
                totals = await self._in_executor(
                    self.store.aggregate,
                    job.key.profile_id,
                    job.key.bucket_name,
                    job.key.prefix,
                )
        except Exception as e:
            logger.warning(f"Could not read prefix status for {job.key}: {e}")
        if prefix_status is not None:
            totals = prefix_status

        result = JobResult(
            job_key=job.key,
            status=status,
            reason=reason,
            objects_indexed=run.objects_indexed,
            requests_made=run.requests_made,
            objects_count=totals.objects_count if totals else 0,
            total_size=totals.total_size if totals else 0,
            continuation_token=prefix_status.continuation_token if prefix_status else None,
            started_at=run.started_at,
            finished_at=time.time(),
        )

        self.registry.remove(job.key, job)
        job.set_state(status)
        try:
            self._publish(job, run, error=reason if status is JobState.FAILED else None)
        finally:
            job.finish(result)

        self.stats.jobs_by_status[status.value] = (
            self.stats.jobs_by_status.get(status.value, 0) + 1
        )
        self._index_logger.sync_finished(
            str(job.key),
            status.value,
            reason,
            run.objects_indexed,
            run.requests_made,
            result.duration_seconds * 1000,
            was_active=run.logged_start,
        )

    async def _execute(self, job: SyncJob, run: _RunState) -> tuple[JobState, str]:
        key, options = job.key, job.options

        job.set_state(JobState.STARTING)
        self._publish(job, run)
        opened = await self._in_executor(self.store.begin_pass, key, options.force)

        if opened.already_complete:
            if opened.status is not None:
                count = opened.status.objects_count
            else:
                # Covered by an ancestor pass; no row of its own
                covered = await self._in_executor(
                    self.store.aggregate, key.profile_id, key.bucket_name, key.prefix
                )
                count = covered.objects_count
            self._record_cache(key, hit=True, saved=max(1, math.ceil(count / options.page_size)))
            return JobState.COMPLETED, ALREADY_COMPLETE_REASON

        self._record_cache(key, hit=False, saved=0)
        self._index_logger.sync_started(str(key), opened.resumed, options.max_requests)
        run.logged_start = True

        if options.refresh_bucket_info:
            await self._refresh_bucket_info(key)

        token = opened.status.continuation_token if opened.status else None
        pass_started_at = opened.status.last_sync_started_at if opened.status else None

        job.set_state(JobState.INDEXING)
        self._publish(job, run)

        while True:
            if job.cancel_requested:
                return JobState.CANCELLED, CANCELLED_REASON
            if options.max_requests and run.requests_made >= options.max_requests:
                return (
                    JobState.PARTIAL,
                    f"Request budget of {options.max_requests} exhausted",
                )

            page = await self._fetch_page(job, token)
            if page is None:
                return JobState.CANCELLED, CANCELLED_REASON
            run.requests_made += 1

            if page.is_truncated and not page.next_token:
                return JobState.FAILED, MISSING_TOKEN_REASON

            commit = await self._in_executor(
                self.store.apply_page,
                key,
                page.objects,
                page.common_prefixes,
                page.next_token,
                page.is_terminal,
                pass_started_at,
            )
            run.objects_indexed += len(page.objects)
            token = page.next_token
            self.stats.pages_committed += 1
            self._index_logger.page_committed(
                str(key),
                key.bucket_name,
                len(page.objects),
                run.requests_made,
                commit.objects_count,
            )

            if commit.completed:
                return (
                    JobState.COMPLETED,
                    f"Indexed {commit.objects_count} objects in {run.requests_made} requests",
                )
            self._publish(job, run)

    # =========================================================================
    # Remote calls
    # =========================================================================

    async def _fetch_page(self, job: SyncJob, token: str | None) -> ListPage | None:
        """
        One page, with retries for transient failures.

        Returns:
            None if the job was cancelled while waiting

        Raises:
            RemoteError: Fatal failure, or retries exhausted
        """
        key, options = job.key, job.options
        attempt = 0
        while True:
            started = time.perf_counter()
            try:
                page = await self._race_cancel(
                    job,
                    self.capability.list_page(
                        key.bucket_name, key.prefix, token, options.page_size
                    ),
                )
            except Exception as exc:
                error = classify_remote_error(exc, OPERATION_LIST_OBJECTS)
                self._record_request(key, OPERATION_LIST_OBJECTS, started, error=error)
                if not error.retryable or attempt >= options.max_retries:
                    if error is exc:
                        raise
                    raise error from exc
                delay = options.backoff_delay(attempt)
                attempt += 1
                self.stats.retries += 1
                self._index_logger.retry_scheduled(
                    str(key), OPERATION_LIST_OBJECTS, attempt, delay, str(error)
                )
                if await self._race_cancel(job, self._sleep(delay)) is _CANCELLED:
                    return None
                continue

            if page is _CANCELLED:
                return None
            page_latency_seconds.observe(
                time.perf_counter() - started, operation=OPERATION_LIST_OBJECTS
            )
            self._record_request(
                key, OPERATION_LIST_OBJECTS, started, objects_affected=len(page.objects)
            )
            return page

    async def _race_cancel(self, job: SyncJob, awaitable: Awaitable[Any]) -> Any:
        """
        Await ``awaitable`` unless the job is cancelled first.

        Cancellation wins a tie: a result that arrives together with the
        cancel request is discarded.
        """
        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(job.cancel_event.wait())
        try:
            await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not work.done():
                work.cancel()
        if job.cancel_requested:
            # Retrieve the outcome so a late failure is not reported as unhandled
            await asyncio.gather(work, return_exceptions=True)
            return _CANCELLED
        return work.result()

    async def _refresh_bucket_info(self, key: JobKey) -> None:
        """Refresh bucket settings when missing or stale. Never fatal."""
        fresh = await self._in_executor(
            self.store.bucket_info_is_fresh,
            key.profile_id,
            key.bucket_name,
            ACL_CACHE_TTL_SECONDS,
        )
        if fresh:
            return

        acl = await self._fetch_setting(
            key, OPERATION_GET_BUCKET_ACL, self.capability.get_bucket_acl
        )
        versioning = await self._fetch_setting(
            key, OPERATION_GET_BUCKET_VERSIONING, self.capability.get_bucket_versioning
        )
        encryption = await self._fetch_setting(
            key, OPERATION_GET_BUCKET_ENCRYPTION, self.capability.get_bucket_encryption
        )
        if acl is None and versioning is None and encryption is None:
            return

        now = self.store.now()
        try:
            await self._in_executor(
                functools.partial(
                    self.store.upsert_bucket_info,
                    key.profile_id,
                    key.bucket_name,
                    versioning_enabled=versioning,
                    encryption_enabled=None if encryption is None else bool(encryption),
                    default_encryption=encryption or None,
                    acl=acl,
                    acl_cached_at=now if acl is not None else None,
                    last_checked_at=now,
                )
            )
        except Exception as e:
            logger.warning(f"Could not store bucket settings for {key.bucket_name}: {e}")

    async def _fetch_setting(
        self,
        key: JobKey,
        operation: str,
        call: Callable[[str], Awaitable[Any]],
    ) -> Any:
        started = time.perf_counter()
        try:
            value = await call(key.bucket_name)
        except Exception as exc:
            error = classify_remote_error(exc, operation)
            self._record_request(key, operation, started, error=error)
            logger.warning(f"{operation} failed for {key.bucket_name}: {error}")
            return None
        if value is not None:
            self._record_request(key, operation, started)
        return value

    # =========================================================================
    # Reporting
    # =========================================================================

    def _publish(self, job: SyncJob, run: _RunState, error: str | None = None) -> None:
        event = ProgressEvent(
            job_key=job.key,
            objects_indexed=run.objects_indexed,
            requests_made=run.requests_made,
            max_requests=job.options.max_requests,
            is_complete=job.state is JobState.COMPLETED,
            status=job.state,
            error=error,
        )
        job.publish(event)
        if self.on_progress is not None:
            try:
                self.on_progress(event)
            except Exception:
                logger.exception(f"Progress callback failed for {job.key}")

    def _record_request(
        self,
        key: JobKey,
        operation: str,
        started: float,
        error: RemoteError | None = None,
        objects_affected: int | None = None,
    ) -> None:
        if self.recorder is None:
            return
        self.recorder.submit_request(
            RequestEvent(
                operation=operation,
                category="LIST" if operation == OPERATION_LIST_OBJECTS else "GET",
                duration_ms=int((time.perf_counter() - started) * 1000),
                success=error is None,
                profile_id=key.profile_id,
                bucket_name=key.bucket_name,
                object_key=key.prefix or None,
                objects_affected=objects_affected,
                error_category=error_category(error) if error else None,
                error_message=error.message if error else None,
            )
        )

    def _record_cache(self, key: JobKey, hit: bool, saved: int) -> None:
        self._index_logger.cache_event(CACHE_OPERATION, hit, job_key=str(key))
        if self.recorder is not None:
            self.recorder.submit_cache_event(
                CACHE_OPERATION,
                hit,
                saved_requests=saved,
                profile_id=key.profile_id,
                bucket_name=key.bucket_name,
            )

    async def _in_executor(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)
