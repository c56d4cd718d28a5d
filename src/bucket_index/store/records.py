"""
records.py - Value types stored in and read from the entity tables.
"""

import sqlite3
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class ObjectRecord:
    """
    One object as reported by a listing page.

    Derived columns are never accepted from callers; the store
    computes them from ``key``.
    """
    key: str
    size: int = 0
    last_modified: str | None = None
    etag: str | None = None
    storage_class: str | None = None
    owner_id: str | None = None
    owner_display_name: str | None = None
    checksum_algorithm: str | None = None
    restore_status: str | None = None
    restore_expiry_date: str | None = None
    content_type: str | None = None
    server_side_encryption: str | None = None
    sse_kms_key_id: str | None = None
    version_id: str | None = None
    metadata_loaded: bool = False


@dataclass(frozen=True, slots=True)
class IndexedObject:
    """A row of the objects table."""
    id: int
    profile_id: str
    bucket_name: str
    key: str
    version_id: str | None
    size: int
    last_modified: str | None
    etag: str | None
    storage_class: str | None
    owner_id: str | None
    owner_display_name: str | None
    checksum_algorithm: str | None
    restore_status: str | None
    restore_expiry_date: str | None
    content_type: str | None
    server_side_encryption: str | None
    sse_kms_key_id: str | None
    parent_prefix: str
    basename: str
    extension: str | None
    depth: int
    is_folder: bool
    indexed_at: int
    metadata_loaded: bool


def object_from_row(row: sqlite3.Row) -> IndexedObject:
    return IndexedObject(
        id=row["id"],
        profile_id=row["profile_id"],
        bucket_name=row["bucket_name"],
        key=row["key"],
        version_id=row["version_id"],
        size=row["size"],
        last_modified=row["last_modified"],
        etag=row["e_tag"],
        storage_class=row["storage_class"],
        owner_id=row["owner_id"],
        owner_display_name=row["owner_display_name"],
        checksum_algorithm=row["checksum_algorithm"],
        restore_status=row["restore_status"],
        restore_expiry_date=row["restore_expiry_date"],
        content_type=row["content_type"],
        server_side_encryption=row["server_side_encryption"],
        sse_kms_key_id=row["sse_kms_key_id"],
        parent_prefix=row["parent_prefix"],
        basename=row["basename"],
        extension=row["extension"],
        depth=row["depth"],
        is_folder=bool(row["is_folder"]),
        indexed_at=row["indexed_at"],
        metadata_loaded=bool(row["metadata_loaded"]),
    )


@dataclass(frozen=True, slots=True)
class PrefixStatus:
    """Completion and resumption state of one (profile, bucket, prefix)."""
    profile_id: str
    bucket_name: str
    prefix: str
    is_complete: bool = False
    objects_count: int = 0
    total_size: int = 0
    continuation_token: str | None = None
    last_indexed_key: str | None = None
    last_sync_started_at: int | None = None
    last_sync_completed_at: int | None = None


def prefix_status_from_row(row: sqlite3.Row) -> PrefixStatus:
    return PrefixStatus(
        profile_id=row["profile_id"],
        bucket_name=row["bucket_name"],
        prefix=row["prefix"],
        is_complete=bool(row["is_complete"]),
        objects_count=row["objects_count"] or 0,
        total_size=row["total_size"] or 0,
        continuation_token=row["continuation_token"],
        last_indexed_key=row["last_indexed_key"],
        last_sync_started_at=row["last_sync_started_at"],
        last_sync_completed_at=row["last_sync_completed_at"],
    )


@dataclass(frozen=True, slots=True)
class BucketInfo:
    """Lazily refreshed bucket settings."""
    profile_id: str
    bucket_name: str
    versioning_enabled: bool | None = None
    encryption_enabled: bool | None = None
    default_encryption: str | None = None
    acl: str | None = None
    acl_cached_at: int | None = None
    region: str | None = None
    initial_index_requests: int = 0
    initial_index_completed: bool = False
    last_checked_at: int | None = None


def _optional_bool(value) -> bool | None:
    return None if value is None else bool(value)


def bucket_info_from_row(row: sqlite3.Row) -> BucketInfo:
    return BucketInfo(
        profile_id=row["profile_id"],
        bucket_name=row["bucket_name"],
        versioning_enabled=_optional_bool(row["versioning_enabled"]),
        encryption_enabled=_optional_bool(row["encryption_enabled"]),
        default_encryption=row["default_encryption"],
        acl=row["acl"],
        acl_cached_at=row["acl_cached_at"],
        region=row["region"],
        initial_index_requests=row["initial_index_requests"] or 0,
        initial_index_completed=bool(row["initial_index_completed"]),
        last_checked_at=row["last_checked_at"],
    )


@dataclass(frozen=True, slots=True)
class PrefixAggregate:
    """Recursive count and size of the non-folder objects under a prefix."""
    objects_count: int
    total_size: int


@dataclass(frozen=True, slots=True)
class ChildEntry:
    """
    One entry of a folder listing.

    Objects carry their own size; folders carry the recursive totals
    of what the index knows below them.
    """
    name: str
    key: str
    is_folder: bool
    size: int
    objects_count: int
    last_modified: str | None = None
    storage_class: str | None = None
    version_id: str | None = None
    is_complete: bool | None = None


@dataclass(frozen=True, slots=True)
class UpsertResult:
    inserted: int
    updated: int

    @property
    def total(self) -> int:
        return self.inserted + self.updated


@dataclass(frozen=True, slots=True)
class StorageClassStats:
    storage_class: str
    object_count: int
    total_size: int


@dataclass(frozen=True, slots=True)
class BucketTotals:
    """One row of v_bucket_stats plus the index bookkeeping around it."""
    profile_id: str
    bucket_name: str
    total_objects: int
    total_size: int
    storage_class_count: int
    last_indexed: int | None
    is_complete: bool
    versioning_enabled: bool | None
    encryption_enabled: bool | None
    storage_classes: list[StorageClassStats] = field(default_factory=list)
    estimated_index_size: int = 0
    initial_index_completed: bool = False
