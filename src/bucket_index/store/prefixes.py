"""
prefixes.py - SQL access to the prefix_status table.

A prefix row is the only place a sync pass keeps its resumption
handle (continuation_token) and its completion flag.
"""

import sqlite3
from typing import Iterable, Sequence

from bucket_index.keys import ancestors, parent_of, prefix_range, range_clause
from bucket_index.store.records import PrefixAggregate, PrefixStatus, prefix_status_from_row


def get_status(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> PrefixStatus | None:
    row = conn.execute(
        """
        SELECT * FROM prefix_status
        WHERE profile_id = ? AND bucket_name = ? AND prefix = ?
        """,
        (profile_id, bucket_name, prefix),
    ).fetchone()
    return prefix_status_from_row(row) if row is not None else None


def list_below(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> list[PrefixStatus]:
    """Rows strictly below ``prefix``, in key order."""
    clause, params = range_clause("prefix", prefix)
    cursor = conn.execute(
        f"""
        SELECT * FROM prefix_status
        WHERE profile_id = ? AND bucket_name = ? AND {clause} AND prefix != ?
        ORDER BY prefix
        """,
        (profile_id, bucket_name, *params, prefix),
    )
    return [prefix_status_from_row(row) for row in cursor]


def direct_children(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> list[PrefixStatus]:
    return [
        status
        for status in list_below(conn, profile_id, bucket_name, prefix)
        if parent_of(status.prefix) == prefix
    ]


def begin_pass(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    prefix: str,
    now: int,
) -> PrefixStatus:
    """
    Load the row for a pass, creating it if needed.

    A row holding a continuation token resumes untouched; otherwise a
    fresh pass is stamped with ``last_sync_started_at = now``.
    """
    status = get_status(conn, profile_id, bucket_name, prefix)
    if status is not None and status.continuation_token:
        return status
    conn.execute(
        """
        INSERT INTO prefix_status (profile_id, bucket_name, prefix, last_sync_started_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(profile_id, bucket_name, prefix)
        DO UPDATE SET last_sync_started_at = excluded.last_sync_started_at,
                      last_indexed_key = NULL
        """,
        (profile_id, bucket_name, prefix, now),
    )
    return get_status(conn, profile_id, bucket_name, prefix)


def record_page(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    prefix: str,
    continuation_token: str | None,
    last_indexed_key: str | None,
    totals: PrefixAggregate,
) -> None:
    conn.execute(
        """
        UPDATE prefix_status
        SET continuation_token = ?,
            last_indexed_key = COALESCE(?, last_indexed_key),
            objects_count = ?,
            total_size = ?
        WHERE profile_id = ? AND bucket_name = ? AND prefix = ?
        """,
        (
            continuation_token,
            last_indexed_key,
            totals.objects_count,
            totals.total_size,
            profile_id,
            bucket_name,
            prefix,
        ),
    )


def ensure_discovered(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    prefixes: Iterable[str],
) -> int:
    """Create incomplete rows for prefixes seen as common prefixes."""
    created = 0
    for prefix in prefixes:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO prefix_status (profile_id, bucket_name, prefix)
            VALUES (?, ?, ?)
            """,
            (profile_id, bucket_name, prefix),
        )
        created += cursor.rowcount
    return created


def mark_complete(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    prefix: str,
    totals: PrefixAggregate,
    now: int,
) -> None:
    conn.execute(
        """
        INSERT INTO prefix_status
            (profile_id, bucket_name, prefix, is_complete, objects_count,
             total_size, continuation_token, last_sync_completed_at)
        VALUES (?, ?, ?, TRUE, ?, ?, NULL, ?)
        ON CONFLICT(profile_id, bucket_name, prefix)
        DO UPDATE SET is_complete = TRUE,
                      objects_count = excluded.objects_count,
                      total_size = excluded.total_size,
                      continuation_token = NULL,
                      last_sync_completed_at = excluded.last_sync_completed_at
        """,
        (profile_id, bucket_name, prefix, totals.objects_count, totals.total_size, now),
    )


def complete_below(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    prefix: str,
    aggregates: dict[str, PrefixAggregate],
    now: int,
    skip: Sequence[str] = (),
) -> None:
    """
    Mark every folder below a fully listed prefix complete.

    Folders with objects get their recursive totals; rows for folders
    the listing proved empty are completed with zero totals. Folders in
    ``skip``, and everything below them, are left to the jobs that own them.
    """
    owned = tuple(skip)
    for folder in sorted(aggregates):
        if not folder.startswith(owned):
            mark_complete(conn, profile_id, bucket_name, folder, aggregates[folder], now)
    empty = PrefixAggregate(objects_count=0, total_size=0)
    for status in list_below(conn, profile_id, bucket_name, prefix):
        if status.prefix.startswith(owned):
            continue
        if status.prefix not in aggregates:
            mark_complete(conn, profile_id, bucket_name, status.prefix, empty, now)


def invalidate(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> None:
    """Clear completion and the resumption handle; rows stay visible."""
    conn.execute(
        """
        INSERT INTO prefix_status (profile_id, bucket_name, prefix, is_complete)
        VALUES (?, ?, ?, FALSE)
        ON CONFLICT(profile_id, bucket_name, prefix)
        DO UPDATE SET is_complete = FALSE,
                      continuation_token = NULL,
                      last_indexed_key = NULL
        """,
        (profile_id, bucket_name, prefix),
    )
    mark_ancestors_incomplete(conn, profile_id, bucket_name, prefix)


def mark_ancestors_incomplete(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> None:
    """Mark ``prefix`` and every existing ancestor row incomplete."""
    for folder in [prefix] + ancestors(prefix):
        conn.execute(
            """
            UPDATE prefix_status SET is_complete = FALSE
            WHERE profile_id = ? AND bucket_name = ? AND prefix = ?
            """,
            (profile_id, bucket_name, folder),
        )


def delete_from(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> int:
    """Delete the row for ``prefix`` and every row below it."""
    clause, params = range_clause("prefix", prefix)
    cursor = conn.execute(
        f"DELETE FROM prefix_status WHERE profile_id = ? AND bucket_name = ? AND {clause}",
        (profile_id, bucket_name, *params),
    )
    return cursor.rowcount


def cleanup_orphans(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str
) -> int:
    """Delete non-root rows with no indexed object under them."""
    cursor = conn.execute(
        """
        DELETE FROM prefix_status
        WHERE profile_id = ? AND bucket_name = ? AND prefix != ''
          AND NOT EXISTS (
              SELECT 1 FROM objects o
              WHERE o.profile_id = prefix_status.profile_id
                AND o.bucket_name = prefix_status.bucket_name
                AND substr(o.key, 1, length(prefix_status.prefix)) = prefix_status.prefix
          )
        """,
        (profile_id, bucket_name),
    )
    return cursor.rowcount


def is_prefix_complete(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> bool:
    """
    Whether the index holds everything under ``prefix``.

    An explicit row decides. Without one, the prefix is covered when an
    ancestor is complete, or when an in-progress root pass (which lists
    keys in order) has already moved past every key under it.
    """
    status = get_status(conn, profile_id, bucket_name, prefix)
    if status is not None:
        return status.is_complete

    for folder in ancestors(prefix):
        above = get_status(conn, profile_id, bucket_name, folder)
        if above is not None and above.is_complete:
            return True

    root = get_status(conn, profile_id, bucket_name, "")
    _, hi = prefix_range(prefix)
    return (
        root is not None
        and bool(root.continuation_token)
        and root.last_indexed_key is not None
        and hi is not None
        and root.last_indexed_key >= hi
    )
