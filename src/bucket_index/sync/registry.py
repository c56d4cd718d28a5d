"""
registry.py - Active-job registry.

The only shared in-memory mutable state of the sync subsystem. Guarded
by a lock so the entity store can consult it from executor threads.
"""

import threading
from typing import Callable

from bucket_index.errors import JobNotFoundError
from bucket_index.sync.jobs import JobKey, SyncJob


class JobRegistry:
    """At most one live job per key."""

    def __init__(self) -> None:
        self._jobs: dict[JobKey, SyncJob] = {}
        self._lock = threading.Lock()

    def get(self, key: JobKey) -> SyncJob | None:
        with self._lock:
            return self._jobs.get(key)

    def require(self, key: JobKey) -> SyncJob:
        job = self.get(key)
        if job is None:
            raise JobNotFoundError(key)
        return job

    def get_or_create(
        self, key: JobKey, factory: Callable[[], SyncJob]
    ) -> tuple[SyncJob, bool]:
        """Return the live job for ``key`` or register a new one."""
        with self._lock:
            job = self._jobs.get(key)
            if job is not None and not job.done():
                return job, False
            job = factory()
            self._jobs[key] = job
            return job, True

    def remove(self, key: JobKey, job: SyncJob) -> None:
        with self._lock:
            if self._jobs.get(key) is job:
                del self._jobs[key]

    def is_in_flight(self, key: JobKey) -> bool:
        with self._lock:
            job = self._jobs.get(key)
        return job is not None and job.state.is_in_flight

    def in_flight_for_bucket(self, profile_id: str, bucket_name: str) -> list[JobKey]:
        with self._lock:
            jobs = list(self._jobs.items())
        return [
            key
            for key, job in jobs
            if key.profile_id == profile_id
            and key.bucket_name == bucket_name
            and job.state.is_in_flight
        ]

    def active(self) -> list[SyncJob]:
        with self._lock:
            return [job for job in self._jobs.values() if not job.done()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
