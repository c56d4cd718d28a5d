"""
objects.py - SQL access to the objects table.

Functions take an open connection and never manage transactions
themselves; callers wrap them in execute_in_transaction or a savepoint.
"""

import sqlite3
from typing import Iterable, Sequence

from bucket_index.config import ESTIMATED_ROW_OVERHEAD_BYTES
from bucket_index.errors import InvariantViolationError
from bucket_index.invariants import Invariants
from bucket_index.keys import (
    ancestors,
    next_segment,
    range_clause,
    split_key,
)
from bucket_index.store.records import (
    ChildEntry,
    IndexedObject,
    ObjectRecord,
    PrefixAggregate,
    StorageClassStats,
    UpsertResult,
    object_from_row,
)

# Keeps IN (...) lists below SQLITE_MAX_VARIABLE_NUMBER on old builds
_IN_CHUNK = 500

_COLUMNS = (
    "profile_id, bucket_name, key, version_id, size, last_modified, e_tag, "
    "storage_class, owner_id, owner_display_name, checksum_algorithm, "
    "restore_status, restore_expiry_date, content_type, server_side_encryption, "
    "sse_kms_key_id, parent_prefix, basename, extension, depth, is_folder, "
    "indexed_at, metadata_loaded"
)

_UPDATE_SET = """
    size = excluded.size,
    last_modified = excluded.last_modified,
    e_tag = excluded.e_tag,
    storage_class = excluded.storage_class,
    owner_id = COALESCE(excluded.owner_id, owner_id),
    owner_display_name = COALESCE(excluded.owner_display_name, owner_display_name),
    checksum_algorithm = COALESCE(excluded.checksum_algorithm, checksum_algorithm),
    restore_status = excluded.restore_status,
    restore_expiry_date = excluded.restore_expiry_date,
    content_type = COALESCE(excluded.content_type, content_type),
    server_side_encryption = COALESCE(excluded.server_side_encryption, server_side_encryption),
    sse_kms_key_id = COALESCE(excluded.sse_kms_key_id, sse_kms_key_id),
    parent_prefix = excluded.parent_prefix,
    basename = excluded.basename,
    extension = excluded.extension,
    depth = excluded.depth,
    is_folder = excluded.is_folder,
    indexed_at = excluded.indexed_at,
    metadata_loaded = MAX(excluded.metadata_loaded, metadata_loaded)
"""

_UPSERT_UNVERSIONED_SQL = f"""
INSERT INTO objects ({_COLUMNS})
VALUES ({", ".join("?" * 23)})
ON CONFLICT(profile_id, bucket_name, key) WHERE version_id IS NULL
DO UPDATE SET {_UPDATE_SET}
"""

_UPSERT_VERSIONED_SQL = f"""
INSERT INTO objects ({_COLUMNS})
VALUES ({", ".join("?" * 23)})
ON CONFLICT(profile_id, bucket_name, key, version_id) WHERE version_id IS NOT NULL
DO UPDATE SET {_UPDATE_SET}
"""


def _row_params(
    profile_id: str, bucket_name: str, record: ObjectRecord, indexed_at: int
) -> tuple:
    parts = split_key(record.key)
    return (
        profile_id,
        bucket_name,
        record.key,
        record.version_id,
        record.size,
        record.last_modified,
        record.etag,
        record.storage_class or "STANDARD",
        record.owner_id,
        record.owner_display_name,
        record.checksum_algorithm,
        record.restore_status,
        record.restore_expiry_date,
        record.content_type,
        record.server_side_encryption,
        record.sse_kms_key_id,
        parts.parent_prefix,
        parts.basename,
        parts.extension,
        parts.depth,
        parts.is_folder,
        indexed_at,
        record.metadata_loaded,
    )


def _existing_identities(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, keys: Sequence[str]
) -> dict[str, set[str | None]]:
    found: dict[str, set[str | None]] = {}
    for start in range(0, len(keys), _IN_CHUNK):
        chunk = keys[start : start + _IN_CHUNK]
        placeholders = ", ".join("?" * len(chunk))
        cursor = conn.execute(
            f"""
            SELECT key, version_id FROM objects
            WHERE profile_id = ? AND bucket_name = ? AND key IN ({placeholders})
            """,
            (profile_id, bucket_name, *chunk),
        )
        for row in cursor:
            found.setdefault(row["key"], set()).add(row["version_id"])
    return found


def upsert_batch(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    records: Sequence[ObjectRecord],
    indexed_at: int,
) -> UpsertResult:
    """
    Insert or replace a batch of objects by identity.

    Raises:
        InvariantViolationError: Duplicate identity inside the batch, or a
            key that would hold both versioned and unversioned rows
        ValidationError: Empty key
    """
    if not records:
        return UpsertResult(inserted=0, updated=0)

    Invariants.assert_unique_batch(records)

    keys = sorted({r.key for r in records})
    existing = _existing_identities(conn, profile_id, bucket_name, keys)

    inserted = 0
    updated = 0
    for record in records:
        stored = existing.get(record.key, set())
        versioned = record.version_id is not None
        if stored and any((v is not None) != versioned for v in stored):
            raise InvariantViolationError(
                Invariants.SINGLE_IDENTITY,
                f"Key {record.key!r} already holds "
                f"{'unversioned' if versioned else 'versioned'} rows.",
            )
        sql = _UPSERT_VERSIONED_SQL if versioned else _UPSERT_UNVERSIONED_SQL
        conn.execute(sql, _row_params(profile_id, bucket_name, record, indexed_at))
        if record.version_id in stored:
            updated += 1
        else:
            inserted += 1

    return UpsertResult(inserted=inserted, updated=updated)


def aggregate(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> PrefixAggregate:
    """
    Recursive count and size of non-folder objects under ``prefix``.

    Folder prefixes (root or ending in '/') are resolved through the
    parent_prefix index; any other prefix is a plain key range.
    """
    if prefix == "" or prefix.endswith("/"):
        clause, params = range_clause("parent_prefix", prefix)
    else:
        clause, params = range_clause("key", prefix)
    row = conn.execute(
        f"""
        SELECT COUNT(*), COALESCE(SUM(size), 0) FROM objects
        WHERE profile_id = ? AND bucket_name = ? AND is_folder = FALSE
          AND {clause}
        """,
        (profile_id, bucket_name, *params),
    ).fetchone()
    return PrefixAggregate(objects_count=row[0], total_size=row[1])


def sub_prefix_aggregates(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> dict[str, PrefixAggregate]:
    """
    Recursive aggregates for every folder strictly below ``prefix``.

    Rolled up from one GROUP BY over parent_prefix.
    """
    clause, params = range_clause("parent_prefix", prefix)
    cursor = conn.execute(
        f"""
        SELECT parent_prefix,
               SUM(CASE WHEN is_folder THEN 0 ELSE 1 END),
               COALESCE(SUM(CASE WHEN is_folder THEN 0 ELSE size END), 0)
        FROM objects
        WHERE profile_id = ? AND bucket_name = ? AND {clause}
        GROUP BY parent_prefix
        """,
        (profile_id, bucket_name, *params),
    )
    totals: dict[str, list[int]] = {}
    for parent, count, size in cursor:
        chain = [parent] + ancestors(parent)
        for folder in chain:
            if len(folder) <= len(prefix):
                break
            acc = totals.setdefault(folder, [0, 0])
            acc[0] += count
            acc[1] += size
    return {
        folder: PrefixAggregate(objects_count=c, total_size=s)
        for folder, (c, s) in totals.items()
    }


def get_children(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> tuple[list[ChildEntry], list[ChildEntry]]:
    """
    Direct children of a folder prefix, as (folders, files).

    Folders come from three places: deeper parent_prefix values,
    folder marker objects, and discovered-but-empty prefix_status rows.
    """
    files: list[ChildEntry] = []
    folders: dict[str, ChildEntry] = {}

    cursor = conn.execute(
        """
        SELECT key, version_id, size, last_modified, storage_class, is_folder
        FROM objects
        WHERE profile_id = ? AND bucket_name = ? AND parent_prefix = ?
        ORDER BY key, version_id
        """,
        (profile_id, bucket_name, prefix),
    )
    for row in cursor:
        name, _ = next_segment(row["key"], prefix)
        if row["is_folder"]:
            folders[row["key"]] = ChildEntry(
                name=name, key=row["key"], is_folder=True, size=0, objects_count=0
            )
        else:
            files.append(
                ChildEntry(
                    name=name,
                    key=row["key"],
                    is_folder=False,
                    size=row["size"],
                    objects_count=1,
                    last_modified=row["last_modified"],
                    storage_class=row["storage_class"],
                    version_id=row["version_id"],
                )
            )

    clause, params = range_clause("parent_prefix", prefix)
    cursor = conn.execute(
        f"""
        SELECT substr(parent_prefix, 1,
                      length(?) + instr(substr(parent_prefix, length(?) + 1), '/')
               ) AS child,
               SUM(CASE WHEN is_folder THEN 0 ELSE 1 END) AS objects_count,
               COALESCE(SUM(CASE WHEN is_folder THEN 0 ELSE size END), 0) AS total_size
        FROM objects
        WHERE profile_id = ? AND bucket_name = ? AND {clause}
          AND parent_prefix != ?
        GROUP BY child
        """,
        (prefix, prefix, profile_id, bucket_name, *params, prefix),
    )
    for row in cursor:
        child = row["child"]
        folders[child] = ChildEntry(
            name=child[len(prefix):],
            key=child,
            is_folder=True,
            size=row["total_size"],
            objects_count=row["objects_count"],
        )

    return _sorted_folders(folders), files


def _sorted_folders(folders: dict[str, ChildEntry]) -> list[ChildEntry]:
    return [folders[k] for k in sorted(folders)]


def get_object(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    key: str,
    version_id: str | None = None,
) -> IndexedObject | None:
    if version_id is None:
        row = conn.execute(
            """
            SELECT * FROM objects
            WHERE profile_id = ? AND bucket_name = ? AND key = ?
              AND version_id IS NULL
            """,
            (profile_id, bucket_name, key),
        ).fetchone()
    else:
        row = conn.execute(
            """
            SELECT * FROM objects
            WHERE profile_id = ? AND bucket_name = ? AND key = ? AND version_id = ?
            """,
            (profile_id, bucket_name, key, version_id),
        ).fetchone()
    return object_from_row(row) if row is not None else None


def search_objects(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    query: str,
    prefix: str = "",
    limit: int | None = None,
) -> list[IndexedObject]:
    """Case-insensitive substring search on keys, optionally under a prefix."""
    clause, params = range_clause("key", prefix)
    sql = f"""
        SELECT * FROM objects
        WHERE profile_id = ? AND bucket_name = ? AND {clause}
          AND instr(lower(key), lower(?)) > 0
        ORDER BY key
    """
    args: list = [profile_id, bucket_name, *params, query]
    if limit is not None:
        sql += " LIMIT ?"
        args.append(limit)
    return [object_from_row(row) for row in conn.execute(sql, args)]


def delete_key(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, key: str
) -> int:
    """Remove every row (any version) for one key."""
    cursor = conn.execute(
        "DELETE FROM objects WHERE profile_id = ? AND bucket_name = ? AND key = ?",
        (profile_id, bucket_name, key),
    )
    return cursor.rowcount


def delete_under(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str, prefix: str
) -> int:
    clause, params = range_clause("key", prefix)
    cursor = conn.execute(
        f"DELETE FROM objects WHERE profile_id = ? AND bucket_name = ? AND {clause}",
        (profile_id, bucket_name, *params),
    )
    return cursor.rowcount


def delete_not_seen_since(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    prefix: str,
    started_at: int,
) -> int:
    """Drop unversioned rows under ``prefix`` that a full pass did not refresh."""
    clause, params = range_clause("key", prefix)
    cursor = conn.execute(
        f"""
        DELETE FROM objects
        WHERE profile_id = ? AND bucket_name = ? AND {clause}
          AND version_id IS NULL AND indexed_at < ?
        """,
        (profile_id, bucket_name, *params, started_at),
    )
    return cursor.rowcount


def delete_missing_children(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    prefix: str,
    current_keys: Iterable[str],
) -> int:
    """Drop direct children of ``prefix`` absent from ``current_keys``."""
    keep = set(current_keys)
    cursor = conn.execute(
        """
        SELECT key FROM objects
        WHERE profile_id = ? AND bucket_name = ? AND parent_prefix = ?
        """,
        (profile_id, bucket_name, prefix),
    )
    ghosts = [row["key"] for row in cursor if row["key"] not in keep]
    for key in ghosts:
        delete_key(conn, profile_id, bucket_name, key)
    return len(ghosts)


def stale_parents(
    conn: sqlite3.Connection, cutoff: int
) -> list[tuple[str, str, str]]:
    cursor = conn.execute(
        """
        SELECT DISTINCT profile_id, bucket_name, parent_prefix
        FROM objects WHERE indexed_at < ?
        """,
        (cutoff,),
    )
    return [(r[0], r[1], r[2]) for r in cursor]


def delete_indexed_before(conn: sqlite3.Connection, cutoff: int) -> int:
    cursor = conn.execute("DELETE FROM objects WHERE indexed_at < ?", (cutoff,))
    return cursor.rowcount


def storage_class_stats(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str
) -> list[StorageClassStats]:
    cursor = conn.execute(
        """
        SELECT storage_class, object_count, total_size FROM v_storage_stats
        WHERE profile_id = ? AND bucket_name = ?
        ORDER BY total_size DESC
        """,
        (profile_id, bucket_name),
    )
    return [
        StorageClassStats(
            storage_class=row["storage_class"] or "STANDARD",
            object_count=row["object_count"],
            total_size=row["total_size"] or 0,
        )
        for row in cursor
    ]


def estimate_index_size(
    conn: sqlite3.Connection, profile_id: str, bucket_name: str
) -> int:
    """Approximate bytes used by a bucket's rows: fixed overhead plus text lengths."""
    row = conn.execute(
        """
        SELECT COUNT(*) * ? +
               COALESCE(SUM(LENGTH(key)), 0) +
               COALESCE(SUM(LENGTH(COALESCE(e_tag, ''))), 0) +
               COALESCE(SUM(LENGTH(COALESCE(storage_class, ''))), 0) +
               COALESCE(SUM(LENGTH(COALESCE(parent_prefix, ''))), 0) +
               COALESCE(SUM(LENGTH(COALESCE(basename, ''))), 0)
        FROM objects
        WHERE profile_id = ? AND bucket_name = ?
        """,
        (ESTIMATED_ROW_OVERHEAD_BYTES, profile_id, bucket_name),
    ).fetchone()
    return int(row[0] or 0)


def find_derived_field_drift(
    conn: sqlite3.Connection,
    profile_id: str | None = None,
    bucket_name: str | None = None,
) -> list[IndexedObject]:
    """Rows whose stored derived columns disagree with their key."""
    sql = "SELECT * FROM objects"
    args: list = []
    if profile_id is not None and bucket_name is not None:
        sql += " WHERE profile_id = ? AND bucket_name = ?"
        args = [profile_id, bucket_name]
    drifted = []
    for row in conn.execute(sql, args):
        obj = object_from_row(row)
        parts = split_key(obj.key)
        if (
            parts.parent_prefix != obj.parent_prefix
            or parts.basename != obj.basename
            or parts.extension != obj.extension
            or parts.depth != obj.depth
            or parts.is_folder != obj.is_folder
        ):
            drifted.append(obj)
    return drifted
