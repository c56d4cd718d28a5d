"""
buckets.py - SQL access to the bucket_info table.
"""

import sqlite3

from bucket_index.store.records import BucketInfo, bucket_info_from_row


def get_bucket_info(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str
) -> BucketInfo | None:
    row = conn.execute(
        "SELECT * FROM bucket_info WHERE profile_id = ? AND bucket_name = ?",
        (profile_id, bucket_name),
    ).fetchone()
    return bucket_info_from_row(row) if row is not None else None


def upsert_bucket_info(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    *,
    versioning_enabled: bool | None = None,
    encryption_enabled: bool | None = None,
    default_encryption: str | None = None,
    acl: str | None = None,
    acl_cached_at: int | None = None,
    region: str | None = None,
    last_checked_at: int | None = None,
) -> None:
    """Merge known settings into the row; ``None`` keeps the stored value."""
    conn.execute(
        """
        INSERT INTO bucket_info
            (profile_id, bucket_name, versioning_enabled, encryption_enabled,
             default_encryption, acl, acl_cached_at, region, last_checked_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(profile_id, bucket_name) DO UPDATE SET
            versioning_enabled = COALESCE(excluded.versioning_enabled, versioning_enabled),
            encryption_enabled = COALESCE(excluded.encryption_enabled, encryption_enabled),
            default_encryption = COALESCE(excluded.default_encryption, default_encryption),
            acl = COALESCE(excluded.acl, acl),
            acl_cached_at = COALESCE(excluded.acl_cached_at, acl_cached_at),
            region = COALESCE(excluded.region, region),
            last_checked_at = COALESCE(excluded.last_checked_at, last_checked_at)
        """,
        (
            profile_id,
            bucket_name,
            versioning_enabled,
            encryption_enabled,
            default_encryption,
            acl,
            acl_cached_at,
            region,
            last_checked_at,
        ),
    )


def add_index_requests(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    requests: int,
    completed: bool,
) -> None:
    """Account requests spent on the initial root index of a bucket."""
    conn.execute(
        """
        INSERT INTO bucket_info
            (profile_id, bucket_name, initial_index_requests, initial_index_completed)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(profile_id, bucket_name) DO UPDATE SET
            initial_index_requests = initial_index_requests + excluded.initial_index_requests,
            initial_index_completed = MAX(initial_index_completed, excluded.initial_index_completed)
        """,
        (profile_id, bucket_name, requests, completed),
    )


def delete_bucket_info(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str
) -> int:
    cursor = conn.execute(
        "DELETE FROM bucket_info WHERE profile_id = ? AND bucket_name = ?",
        (profile_id, bucket_name),
    )
    return cursor.rowcount
