"""
bucket_index - Local SQLite index of remote object-storage buckets.

Mirrors bucket listings into SQLite so folders can be browsed, counted
and searched without repeated paginated LIST calls. Listings are synced
page by page, resumably, with per-prefix completion tracking and
request/cost/cache metrics.
"""

from bucket_index.errors import (
    BucketIndexError,
    DatabaseError,
    InvariantViolation,
    InvariantViolationError,
    JobNotFoundError,
    PermissionDeniedError,
    RemoteError,
    SchemaError,
    TransientRemoteError,
    ValidationError,
)
from bucket_index.metrics_storage import CacheEvent, MetricsRecorder, RequestEvent
from bucket_index.query import BrowseResult, QueryFacade
from bucket_index.store import EntityStore, ObjectRecord
from bucket_index.sync.capability import ListingCapability, ListPage
from bucket_index.sync.engine import SyncEngine
from bucket_index.sync.jobs import JobKey, JobResult, JobState, ProgressEvent, SyncJob, SyncOptions
from bucket_index.versions import ObjectVersion, VersionLedger

__version__ = "0.1.0"
__all__ = [
    # Core
    "EntityStore",
    "SyncEngine",
    "VersionLedger",
    "MetricsRecorder",
    "QueryFacade",
    # Records
    "ObjectRecord",
    "ObjectVersion",
    "BrowseResult",
    "RequestEvent",
    "CacheEvent",
    # Sync
    "ListingCapability",
    "ListPage",
    "JobKey",
    "JobResult",
    "JobState",
    "ProgressEvent",
    "SyncJob",
    "SyncOptions",
    # Errors
    "BucketIndexError",
    "DatabaseError",
    "InvariantViolation",
    "InvariantViolationError",
    "JobNotFoundError",
    "PermissionDeniedError",
    "RemoteError",
    "SchemaError",
    "TransientRemoteError",
    "ValidationError",
]
