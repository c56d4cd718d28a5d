"""
jobs.py - Sync job identity, state machine and progress reporting.

A job walks IDLE -> STARTING -> INDEXING and ends in exactly one of
COMPLETED, PARTIAL, FAILED or CANCELLED. Every terminal state carries
a human-readable reason.
"""

import asyncio
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import AsyncIterator

from bucket_index.config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
)
from bucket_index.errors import ValidationError


@dataclass(frozen=True, slots=True)
class JobKey:
    """Identity of a sync job: one per (profile, bucket, prefix)."""
    profile_id: str
    bucket_name: str
    prefix: str = ""

    def __str__(self) -> str:
        return f"{self.profile_id}:{self.bucket_name}/{self.prefix}"


class JobState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    INDEXING = "indexing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def is_in_flight(self) -> bool:
        return self in (JobState.STARTING, JobState.INDEXING)


_TERMINAL_STATES = frozenset(
    {JobState.COMPLETED, JobState.PARTIAL, JobState.FAILED, JobState.CANCELLED}
)


@dataclass
class SyncOptions:
    """
    Per-trigger options.

    ``max_requests`` of 0 means no request budget.
    """
    max_requests: int = 0
    page_size: int = DEFAULT_PAGE_SIZE
    force: bool = False
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = RETRY_BASE_DELAY_SECONDS
    retry_max_delay: float = RETRY_MAX_DELAY_SECONDS
    refresh_bucket_info: bool = True

    def validate(self) -> None:
        if self.max_requests < 0:
            raise ValidationError(
                "max_requests must be >= 0", field="max_requests", value=self.max_requests
            )
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}",
                field="page_size",
                value=self.page_size,
            )
        if self.max_retries < 0:
            raise ValidationError(
                "max_retries must be >= 0", field="max_retries", value=self.max_retries
            )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot published after every state change and committed page."""
    job_key: JobKey
    objects_indexed: int
    requests_made: int
    max_requests: int
    is_complete: bool
    status: JobState
    error: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["job_key"] = str(self.job_key)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class JobResult:
    """Terminal outcome of a sync job."""
    job_key: JobKey
    status: JobState
    reason: str
    objects_indexed: int = 0
    requests_made: int = 0
    objects_count: int = 0
    total_size: int = 0
    continuation_token: str | None = None
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def is_complete(self) -> bool:
        return self.status is JobState.COMPLETED

    @property
    def duration_seconds(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)


class SyncJob:
    """
    Handle on a running (or finished) sync job.

    Concurrent triggers for the same key share one handle, so they all
    observe the same progress stream and the same terminal result.
    """

    def __init__(self, key: JobKey, options: SyncOptions) -> None:
        self.key = key
        self.options = options
        self.task: asyncio.Task | None = None
        self.result: JobResult | None = None
        self._state = JobState.IDLE
        self._state_lock = threading.Lock()
        self._loop = asyncio.get_running_loop()
        self._cancel_requested = False
        self._cancel_event = asyncio.Event()
        self._done: asyncio.Future = self._loop.create_future()
        self._subscribers: list[asyncio.Queue] = []
        self._last_event: ProgressEvent | None = None

    @property
    def state(self) -> JobState:
        with self._state_lock:
            return self._state

    def set_state(self, state: JobState) -> None:
        with self._state_lock:
            self._state = state

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Request cooperative cancellation; safe to call from any thread."""
        self._cancel_requested = True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._cancel_event.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._cancel_event.set)

    async def wait(self) -> JobResult:
        return await asyncio.shield(self._done)

    def done(self) -> bool:
        return self._done.done()

    def publish(self, event: ProgressEvent) -> None:
        self._last_event = event
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """
        Progress events from now until the terminal one.

        A late subscriber first receives the most recent event.
        """
        queue: asyncio.Queue = asyncio.Queue()
        if self._last_event is not None:
            queue.put_nowait(self._last_event)
        if self.done():
            while not queue.empty():
                yield queue.get_nowait()
            return
        self._subscribers.append(queue)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.status.is_terminal:
                    return
        finally:
            self._subscribers.remove(queue)

    def finish(self, result: JobResult) -> None:
        self.result = result
        self.set_state(result.status)
        if not self._done.done():
            self._done.set_result(result)


@dataclass
class EngineStats:
    """Counters across all jobs run by one engine."""
    jobs_started: int = 0
    jobs_by_status: dict[str, int] = field(default_factory=dict)
    pages_committed: int = 0
    retries: int = 0
