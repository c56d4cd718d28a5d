"""
versions.py - Version ledger for versioned buckets.

Keeps object_versions consistent: at most one version of a key is
flagged latest, and a latest delete marker hides the key from the
non-version view (the objects table).
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Sequence

from bucket_index.errors import ValidationError
from bucket_index.invariants import Invariants
from bucket_index.keys import split_key
from bucket_index.store import objects, prefixes
from bucket_index.store.entity_store import EntityStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ObjectVersion:
    """One version of a key, or a delete marker."""
    key: str
    version_id: str
    size: int = 0
    last_modified: str | None = None
    etag: str | None = None
    storage_class: str | None = None
    is_latest: bool = False
    is_delete_marker: bool = False
    owner_id: str | None = None
    owner_display_name: str | None = None
    checksum_algorithm: str | None = None
    indexed_at: int | None = None


def _version_from_row(row: sqlite3.Row) -> ObjectVersion:
    return ObjectVersion(
        key=row["key"],
        version_id=row["version_id"],
        size=row["size"],
        last_modified=row["last_modified"],
        etag=row["e_tag"],
        storage_class=row["storage_class"],
        is_latest=bool(row["is_latest"]),
        is_delete_marker=bool(row["is_delete_marker"]),
        owner_id=row["owner_id"],
        owner_display_name=row["owner_display_name"],
        checksum_algorithm=row["checksum_algorithm"],
        indexed_at=row["indexed_at"],
    )


def _record_one(
    conn: sqlite3.Connection,
    profile_id: str,
    bucket_name: str,
    version: ObjectVersion,
    indexed_at: int,
) -> None:
    if not version.version_id:
        raise ValidationError(
            "Version id must not be empty", field="version_id", value=version.version_id
        )
    split_key(version.key)

    if version.is_latest:
        conn.execute(
            """
            UPDATE object_versions SET is_latest = FALSE
            WHERE profile_id = ? AND bucket_name = ? AND key = ? AND version_id != ?
              AND is_latest = TRUE
            """,
            (profile_id, bucket_name, version.key, version.version_id),
        )

    conn.execute(
        """
        INSERT INTO object_versions
            (profile_id, bucket_name, key, version_id, size, last_modified, e_tag,
             storage_class, is_latest, is_delete_marker, owner_id,
             owner_display_name, checksum_algorithm, indexed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(profile_id, bucket_name, key, version_id) DO UPDATE SET
            size = excluded.size,
            last_modified = excluded.last_modified,
            e_tag = excluded.e_tag,
            storage_class = excluded.storage_class,
            is_latest = excluded.is_latest,
            is_delete_marker = excluded.is_delete_marker,
            owner_id = excluded.owner_id,
            owner_display_name = excluded.owner_display_name,
            checksum_algorithm = excluded.checksum_algorithm,
            indexed_at = excluded.indexed_at
        """,
        (
            profile_id,
            bucket_name,
            version.key,
            version.version_id,
            version.size,
            version.last_modified,
            version.etag,
            version.storage_class,
            version.is_latest,
            version.is_delete_marker,
            version.owner_id,
            version.owner_display_name,
            version.checksum_algorithm,
            indexed_at,
        ),
    )

    if version.is_latest and version.is_delete_marker:
        # The key no longer exists in the current view
        if objects.delete_key(conn, profile_id, bucket_name, version.key):
            parent = split_key(version.key).parent_prefix
            prefixes.mark_ancestors_incomplete(conn, profile_id, bucket_name, parent)

    Invariants.assert_single_latest(conn, profile_id, bucket_name, version.key)


class VersionLedger:
    """
    Reads and writes object_versions through the entity store's
    connection and transaction discipline.
    """

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    def record_version(
        self, profile_id: str, bucket_name: str, version: ObjectVersion
    ) -> None:
        """
        Upsert one version. If it is the latest, every other version of
        the key loses the latest flag in the same transaction.
        """
        indexed_at = self._store.now()
        self._store.run_write(
            lambda conn: _record_one(conn, profile_id, bucket_name, version, indexed_at)
        )

    def record_versions(
        self, profile_id: str, bucket_name: str, versions: Sequence[ObjectVersion]
    ) -> int:
        """Upsert a batch atomically, in the given order."""
        indexed_at = self._store.now()

        def _record_all(conn: sqlite3.Connection) -> int:
            for version in versions:
                _record_one(conn, profile_id, bucket_name, version, indexed_at)
            return len(versions)

        count = self._store.run_write(_record_all)
        logger.debug(f"Recorded {count} versions in {profile_id}:{bucket_name}")
        return count

    def latest_view(
        self, profile_id: str, bucket_name: str, key: str
    ) -> ObjectVersion | None:
        """The latest version, or None if it is a delete marker or unknown."""
        row = self._store.run_read(
            lambda conn: conn.execute(
                """
                SELECT * FROM object_versions
                WHERE profile_id = ? AND bucket_name = ? AND key = ? AND is_latest = TRUE
                """,
                (profile_id, bucket_name, key),
            ).fetchone()
        )
        if row is None or row["is_delete_marker"]:
            return None
        return _version_from_row(row)

    def list_versions(
        self, profile_id: str, bucket_name: str, key: str
    ) -> list[ObjectVersion]:
        """All versions of a key, latest first, then newest modification first."""
        rows = self._store.run_read(
            lambda conn: conn.execute(
                """
                SELECT * FROM object_versions
                WHERE profile_id = ? AND bucket_name = ? AND key = ?
                ORDER BY is_latest DESC, last_modified DESC, id DESC
                """,
                (profile_id, bucket_name, key),
            ).fetchall()
        )
        return [_version_from_row(row) for row in rows]

    def check_latest_invariant(self, profile_id: str, bucket_name: str, key: str) -> None:
        self._store.run_read(
            lambda conn: Invariants.assert_single_latest(conn, profile_id, bucket_name, key)
        )
