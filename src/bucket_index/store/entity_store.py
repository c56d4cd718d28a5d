"""
entity_store.py - Transactional owner of the entity tables.

EntityStore is the only writer of objects, prefix_status and
bucket_info. Every public mutation runs in a single transaction
serialized through one connection lock, so a batch is either fully
visible or not at all.

Example:
    store = EntityStore("index.db")
    store.initialize()
    store.upsert_objects("default", "photos", [ObjectRecord("a/b.jpg", size=10)])
    store.aggregate("default", "photos", "a/")  # PrefixAggregate(1, 10)
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

from bucket_index.db.connection import (
    create_connection,
    execute_in_transaction,
    optimize,
    savepoint,
    verify_integrity,
)
from bucket_index.db.migrations import initialize_index_tables
from bucket_index.errors import ValidationError
from bucket_index.invariants import Invariants
from bucket_index.keys import parent_of, split_key
from bucket_index.store import buckets, objects, prefixes
from bucket_index.store.records import (
    BucketInfo,
    BucketTotals,
    ChildEntry,
    IndexedObject,
    ObjectRecord,
    PrefixAggregate,
    PrefixStatus,
    StorageClassStats,
    UpsertResult,
)
from bucket_index.sync.jobs import JobKey
from bucket_index.sync.registry import JobRegistry

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PassStart:
    """Outcome of opening a sync pass."""
    status: PrefixStatus | None
    already_complete: bool
    resumed: bool


@dataclass(frozen=True)
class PageCommit:
    """What one committed page changed."""
    upserted: UpsertResult
    objects_count: int
    total_size: int
    completed: bool
    removed: int = 0


class EntityStore:
    """
    Persistent index of objects, prefixes and bucket settings.

    Args:
        db_path: SQLite database file
        registry: Active-job registry consulted before completion
            state is changed from outside a sync job
        clock: Millisecond clock, injectable for tests
    """

    def __init__(
        self,
        db_path: str,
        registry: JobRegistry | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.db_path = db_path
        self.registry = registry if registry is not None else JobRegistry()
        self._clock = clock or _now_ms
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        """Lazy connection initialization."""
        if self._conn is None:
            self._conn = create_connection(self.db_path)
        return self._conn

    def initialize(self) -> int:
        """Create the schema if needed. Returns the schema version."""
        with self._lock:
            return initialize_index_tables(self.connection)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "EntityStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def now(self) -> int:
        return self._clock()

    def run_write(self, operation: Callable[[sqlite3.Connection], Any]) -> Any:
        with self._lock:
            return execute_in_transaction(self.connection, operation)

    def run_read(self, operation: Callable[[sqlite3.Connection], Any]) -> Any:
        with self._lock:
            return operation(self.connection)

    # =========================================================================
    # Objects
    # =========================================================================

    def upsert_objects(
        self, profile_id: str, bucket_name: str, batch: Sequence[ObjectRecord]
    ) -> UpsertResult:
        """
        Insert or replace a batch of objects, atomically.

        Derived columns are computed here from each key. Applying the
        same batch twice leaves the same content (indexed_at aside).

        Raises:
            InvariantViolationError: Duplicate or mixed identities; nothing
                from the batch is kept
            ValidationError: Empty key
        """
        indexed_at = self.now()
        result = self.run_write(
            lambda conn: objects.upsert_batch(conn, profile_id, bucket_name, batch, indexed_at)
        )
        logger.debug(
            f"Upserted {result.total} objects into {profile_id}:{bucket_name} "
            f"({result.inserted} new)"
        )
        return result

    def get_object(
        self,
        profile_id: str,
        bucket_name: str,
        key: str,
        version_id: str | None = None,
    ) -> IndexedObject | None:
        return self.run_read(
            lambda conn: objects.get_object(conn, profile_id, bucket_name, key, version_id)
        )

    def get_children(
        self, profile_id: str, bucket_name: str, prefix: str = ""
    ) -> list[ChildEntry]:
        """
        Direct children of a folder: sub-folders first, then objects.

        Raises:
            ValidationError: If prefix is neither root nor ends with '/'
        """
        if prefix and not prefix.endswith("/"):
            raise ValidationError(
                "Browse prefix must be empty or end with '/'", field="prefix", value=prefix
            )

        def _children(conn: sqlite3.Connection) -> list[ChildEntry]:
            folders, files = objects.get_children(conn, profile_id, bucket_name, prefix)
            by_key = {entry.key: entry for entry in folders}
            for status in prefixes.direct_children(conn, profile_id, bucket_name, prefix):
                if status.prefix not in by_key:
                    by_key[status.prefix] = ChildEntry(
                        name=status.prefix[len(prefix):],
                        key=status.prefix,
                        is_folder=True,
                        size=0,
                        objects_count=0,
                    )
            entries = []
            for key in sorted(by_key):
                entry = by_key[key]
                complete = prefixes.is_prefix_complete(conn, profile_id, bucket_name, key)
                entries.append(
                    ChildEntry(
                        name=entry.name,
                        key=entry.key,
                        is_folder=True,
                        size=entry.size,
                        objects_count=entry.objects_count,
                        is_complete=complete,
                    )
                )
            return entries + files

        return self.run_read(_children)

    def aggregate(
        self, profile_id: str, bucket_name: str, prefix: str = ""
    ) -> PrefixAggregate:
        return self.run_read(
            lambda conn: objects.aggregate(conn, profile_id, bucket_name, prefix)
        )

    def search_objects(
        self,
        profile_id: str,
        bucket_name: str,
        query: str,
        prefix: str = "",
        limit: int | None = None,
    ) -> list[IndexedObject]:
        return self.run_read(
            lambda conn: objects.search_objects(
                conn, profile_id, bucket_name, query, prefix, limit
            )
        )

    # =========================================================================
    # Prefix status
    # =========================================================================

    def get_prefix_status(
        self, profile_id: str, bucket_name: str, prefix: str = ""
    ) -> PrefixStatus | None:
        return self.run_read(
            lambda conn: prefixes.get_status(conn, profile_id, bucket_name, prefix)
        )

    def is_prefix_complete(
        self, profile_id: str, bucket_name: str, prefix: str = ""
    ) -> bool:
        return self.run_read(
            lambda conn: prefixes.is_prefix_complete(conn, profile_id, bucket_name, prefix)
        )

    def mark_prefix_complete(
        self,
        profile_id: str,
        bucket_name: str,
        prefix: str = "",
        totals: PrefixAggregate | None = None,
    ) -> None:
        """
        Declare a prefix fully indexed.

        Totals default to the current aggregate of the prefix.

        Raises:
            InvariantViolationError: A sync job for the prefix is in flight
        """
        Invariants.assert_no_job_in_flight(
            self.registry, JobKey(profile_id, bucket_name, prefix), "mark complete"
        )
        now = self.now()

        def _complete(conn: sqlite3.Connection) -> None:
            final = totals or objects.aggregate(conn, profile_id, bucket_name, prefix)
            prefixes.mark_complete(conn, profile_id, bucket_name, prefix, final, now)

        self.run_write(_complete)

    def invalidate_prefix(
        self, profile_id: str, bucket_name: str, prefix: str = ""
    ) -> None:
        """
        Forget completion and the continuation token; rows stay visible.

        Ancestors are marked incomplete too.

        Raises:
            InvariantViolationError: A sync job for the prefix is in flight
        """
        Invariants.assert_no_job_in_flight(
            self.registry, JobKey(profile_id, bucket_name, prefix), "invalidate"
        )
        self.run_write(
            lambda conn: prefixes.invalidate(conn, profile_id, bucket_name, prefix)
        )
        logger.info(f"Invalidated {profile_id}:{bucket_name}/{prefix}")

    # =========================================================================
    # Sync passes
    # =========================================================================

    def begin_pass(self, key: JobKey, force: bool = False) -> PassStart:
        """
        Open (or resume) a sync pass for a job key.

        A complete prefix is reported as such unless ``force`` is set,
        in which case completion and any stale token are discarded.
        """
        now = self.now()

        def _begin(conn: sqlite3.Connection) -> PassStart:
            args = (key.profile_id, key.bucket_name, key.prefix)
            if force:
                prefixes.invalidate(conn, *args)
            elif prefixes.is_prefix_complete(conn, *args):
                return PassStart(
                    status=prefixes.get_status(conn, *args),
                    already_complete=True,
                    resumed=False,
                )
            status = prefixes.begin_pass(conn, *args, now)
            return PassStart(
                status=status,
                already_complete=False,
                resumed=bool(status.continuation_token),
            )

        return self.run_write(_begin)

    def apply_page(
        self,
        key: JobKey,
        records: Sequence[ObjectRecord],
        common_prefixes: Iterable[str],
        next_token: str | None,
        is_terminal: bool,
        started_at: int | None,
    ) -> PageCommit:
        """
        Commit one listing page in a single transaction.

        Upserts the objects, records discovered sub-prefixes and
        advances the continuation token. The terminal page also marks
        the prefix and every folder below it complete and drops rows the
        pass never saw (deleted remotely). Folders with their own sync job
        in flight keep their rows; that job completes them.
        """
        profile_id, bucket_name, prefix = key.profile_id, key.bucket_name, key.prefix
        indexed_at = self.now()
        owned_below = []
        if is_terminal:
            owned_below = [
                other.prefix
                for other in self.registry.in_flight_for_bucket(profile_id, bucket_name)
                if other.prefix != prefix and other.prefix.startswith(prefix)
            ]

        def _apply(conn: sqlite3.Connection) -> PageCommit:
            with savepoint(conn, "page_batch"):
                upserted = objects.upsert_batch(
                    conn, profile_id, bucket_name, records, indexed_at
                )
            prefixes.ensure_discovered(conn, profile_id, bucket_name, common_prefixes)

            removed = 0
            if is_terminal and started_at is not None:
                removed = objects.delete_not_seen_since(
                    conn, profile_id, bucket_name, prefix, started_at
                )
            totals = objects.aggregate(conn, profile_id, bucket_name, prefix)
            last_key = records[-1].key if records else None

            if is_terminal:
                below = objects.sub_prefix_aggregates(conn, profile_id, bucket_name, prefix)
                prefixes.complete_below(
                    conn, profile_id, bucket_name, prefix, below, indexed_at, owned_below
                )
                prefixes.mark_complete(conn, profile_id, bucket_name, prefix, totals, indexed_at)
                prefixes.record_page(
                    conn, profile_id, bucket_name, prefix, None, last_key, totals
                )
            else:
                prefixes.record_page(
                    conn, profile_id, bucket_name, prefix, next_token, last_key, totals
                )

            if prefix == "":
                buckets.add_index_requests(
                    conn, profile_id, bucket_name, requests=1, completed=is_terminal
                )

            return PageCommit(
                upserted=upserted,
                objects_count=totals.objects_count,
                total_size=totals.total_size,
                completed=is_terminal,
                removed=removed,
            )

        return self.run_write(_apply)

    # =========================================================================
    # Write-through hooks
    # =========================================================================

    def add_object(
        self, profile_id: str, bucket_name: str, record: ObjectRecord
    ) -> UpsertResult:
        """Index an object after a successful remote upload."""
        indexed_at = self.now()
        parent = split_key(record.key).parent_prefix

        def _add(conn: sqlite3.Connection) -> UpsertResult:
            result = objects.upsert_batch(conn, profile_id, bucket_name, [record], indexed_at)
            prefixes.mark_ancestors_incomplete(conn, profile_id, bucket_name, parent)
            return result

        return self.run_write(_add)

    def remove_object(self, profile_id: str, bucket_name: str, key: str) -> int:
        """Drop an object after a successful remote delete."""
        parent = split_key(key).parent_prefix

        def _remove(conn: sqlite3.Connection) -> int:
            removed = objects.delete_key(conn, profile_id, bucket_name, key)
            prefixes.mark_ancestors_incomplete(conn, profile_id, bucket_name, parent)
            return removed

        return self.run_write(_remove)

    def remove_folder(self, profile_id: str, bucket_name: str, prefix: str) -> int:
        """Drop a folder, everything below it and its prefix rows."""
        if not prefix.endswith("/"):
            raise ValidationError("Folder prefix must end with '/'", field="prefix", value=prefix)

        def _remove(conn: sqlite3.Connection) -> int:
            removed = objects.delete_under(conn, profile_id, bucket_name, prefix)
            prefixes.delete_from(conn, profile_id, bucket_name, prefix)
            prefixes.mark_ancestors_incomplete(
                conn, profile_id, bucket_name, parent_of(prefix)
            )
            return removed

        return self.run_write(_remove)

    def reconcile_prefix_keys(
        self,
        profile_id: str,
        bucket_name: str,
        prefix: str,
        current_keys: Iterable[str],
    ) -> int:
        """
        Remove direct children of ``prefix`` missing from a fresh listing.

        Prefix rows left without any object are cleaned up afterwards.
        """
        keys = list(current_keys)

        def _reconcile(conn: sqlite3.Connection) -> int:
            removed = objects.delete_missing_children(
                conn, profile_id, bucket_name, prefix, keys
            )
            if removed:
                prefixes.cleanup_orphans(conn, profile_id, bucket_name)
            return removed

        removed = self.run_write(_reconcile)
        if removed:
            logger.info(f"Removed {removed} ghost keys under {bucket_name}/{prefix}")
        return removed

    # =========================================================================
    # Buckets
    # =========================================================================

    def get_bucket_info(self, profile_id: str, bucket_name: str) -> BucketInfo | None:
        return self.run_read(
            lambda conn: buckets.get_bucket_info(conn, profile_id, bucket_name)
        )

    def upsert_bucket_info(self, profile_id: str, bucket_name: str, **settings: Any) -> None:
        self.run_write(
            lambda conn: buckets.upsert_bucket_info(conn, profile_id, bucket_name, **settings)
        )

    def bucket_info_is_fresh(
        self, profile_id: str, bucket_name: str, ttl_seconds: int
    ) -> bool:
        """Whether the cached ACL snapshot is younger than ``ttl_seconds``."""
        info = self.get_bucket_info(profile_id, bucket_name)
        if info is None or info.acl_cached_at is None:
            return False
        return self.now() - info.acl_cached_at < ttl_seconds * 1000

    def storage_class_stats(
        self, profile_id: str, bucket_name: str
    ) -> list[StorageClassStats]:
        return self.run_read(
            lambda conn: objects.storage_class_stats(conn, profile_id, bucket_name)
        )

    def bucket_totals(self, profile_id: str, bucket_name: str) -> BucketTotals:
        """Totals from v_bucket_stats with storage breakdown and size estimate."""

        def _totals(conn: sqlite3.Connection) -> BucketTotals:
            row = conn.execute(
                "SELECT * FROM v_bucket_stats WHERE profile_id = ? AND bucket_name = ?",
                (profile_id, bucket_name),
            ).fetchone()
            info = buckets.get_bucket_info(conn, profile_id, bucket_name)
            root_complete = prefixes.is_prefix_complete(conn, profile_id, bucket_name, "")
            classes = objects.storage_class_stats(conn, profile_id, bucket_name)
            estimate = objects.estimate_index_size(conn, profile_id, bucket_name)
            if row is None:
                return BucketTotals(
                    profile_id=profile_id,
                    bucket_name=bucket_name,
                    total_objects=0,
                    total_size=0,
                    storage_class_count=0,
                    last_indexed=None,
                    is_complete=root_complete,
                    versioning_enabled=info.versioning_enabled if info else None,
                    encryption_enabled=info.encryption_enabled if info else None,
                    storage_classes=classes,
                    estimated_index_size=estimate,
                    initial_index_completed=bool(info and info.initial_index_completed),
                )
            return BucketTotals(
                profile_id=profile_id,
                bucket_name=bucket_name,
                total_objects=row["total_objects"],
                total_size=row["total_size"],
                storage_class_count=row["storage_class_count"],
                last_indexed=row["last_indexed"],
                is_complete=bool(row["is_complete"]),
                versioning_enabled=(
                    None if row["versioning_enabled"] is None else bool(row["versioning_enabled"])
                ),
                encryption_enabled=(
                    None if row["encryption_enabled"] is None else bool(row["encryption_enabled"])
                ),
                storage_classes=classes,
                estimated_index_size=estimate,
                initial_index_completed=bool(info and info.initial_index_completed),
            )

        return self.run_read(_totals)

    def list_bucket_indexes(self, profile_id: str) -> list[BucketTotals]:
        """Every bucket of a profile the index knows anything about."""
        names = self.run_read(
            lambda conn: [
                row[0]
                for row in conn.execute(
                    """
                    SELECT bucket_name FROM prefix_status WHERE profile_id = ?
                    UNION
                    SELECT bucket_name FROM objects WHERE profile_id = ?
                    UNION
                    SELECT bucket_name FROM bucket_info WHERE profile_id = ?
                    ORDER BY 1
                    """,
                    (profile_id, profile_id, profile_id),
                )
            ]
        )
        return [self.bucket_totals(profile_id, name) for name in names]

    # =========================================================================
    # Maintenance
    # =========================================================================

    def clear_bucket_index(self, profile_id: str, bucket_name: str) -> int:
        """
        Delete everything indexed for a bucket.

        Raises:
            InvariantViolationError: A sync job for the bucket is in flight
        """
        for key in self.registry.in_flight_for_bucket(profile_id, bucket_name):
            Invariants.assert_no_job_in_flight(self.registry, key, "clear")

        def _clear(conn: sqlite3.Connection) -> int:
            args = (profile_id, bucket_name)
            removed = objects.delete_under(conn, profile_id, bucket_name, "")
            conn.execute(
                "DELETE FROM object_versions WHERE profile_id = ? AND bucket_name = ?", args
            )
            prefixes.delete_from(conn, profile_id, bucket_name, "")
            buckets.delete_bucket_info(conn, profile_id, bucket_name)
            return removed

        removed = self.run_write(_clear)
        logger.info(f"Cleared index of {profile_id}:{bucket_name} ({removed} objects)")
        return removed

    def purge_stale_objects(self, older_than_hours: float) -> int:
        """Drop rows not refreshed for a while; their folders become incomplete."""
        cutoff = self.now() - int(older_than_hours * 3600 * 1000)

        def _purge(conn: sqlite3.Connection) -> int:
            touched = objects.stale_parents(conn, cutoff)
            removed = objects.delete_indexed_before(conn, cutoff)
            for profile_id, bucket_name, parent in touched:
                prefixes.mark_ancestors_incomplete(conn, profile_id, bucket_name, parent)
            return removed

        removed = self.run_write(_purge)
        if removed:
            logger.info(f"Purged {removed} stale objects")
        return removed

    def find_derived_field_drift(
        self, profile_id: str | None = None, bucket_name: str | None = None
    ) -> list[IndexedObject]:
        return self.run_read(
            lambda conn: objects.find_derived_field_drift(conn, profile_id, bucket_name)
        )

    def verify_derived_fields(
        self, profile_id: str | None = None, bucket_name: str | None = None
    ) -> None:
        """
        Raises:
            InvariantViolationError: On the first drifted row
        """
        for obj in self.find_derived_field_drift(profile_id, bucket_name):
            Invariants.assert_derived_fields(obj)

    def verify_integrity(self) -> bool:
        return self.run_read(verify_integrity)

    def optimize(self) -> None:
        self.run_read(optimize)
