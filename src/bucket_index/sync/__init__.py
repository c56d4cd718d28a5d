"""Sync engine: remote listing capability, job model and registry."""

from bucket_index.sync.capability import ListingCapability, ListPage
from bucket_index.sync.jobs import (
    JobKey,
    JobResult,
    JobState,
    ProgressEvent,
    SyncJob,
    SyncOptions,
)
from bucket_index.sync.registry import JobRegistry
from bucket_index.sync.retry import classify_remote_error

__all__ = [
    "ListingCapability",
    "ListPage",
    "JobKey",
    "JobResult",
    "JobState",
    "ProgressEvent",
    "SyncJob",
    "SyncOptions",
    "JobRegistry",
    "classify_remote_error",
]
