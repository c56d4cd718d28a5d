"""
invariants.py - Core invariant definitions and enforcement.

This module defines the invariants the index MUST hold at all times.
Invariant checks are called at critical points to detect violations early.

If an invariant is violated, the current batch is rolled back and
InvariantViolationError propagates to the caller.
"""

import sqlite3
from typing import TYPE_CHECKING, Iterable

from bucket_index.errors import InvariantViolationError
from bucket_index.keys import split_key

if TYPE_CHECKING:
    from bucket_index.store.records import IndexedObject, ObjectRecord
    from bucket_index.sync.jobs import JobKey
    from bucket_index.sync.registry import JobRegistry


class Invariants:
    """
    Core invariants that must hold for index correctness.

    Violation of any invariant means the local index can no longer be
    trusted for the affected prefix.
    """

    # Invariant names as constants for consistent error messages
    SINGLE_IDENTITY = "SINGLE_IDENTITY"
    DERIVED_FIELDS = "DERIVED_FIELDS"
    SINGLE_LATEST_VERSION = "SINGLE_LATEST_VERSION"
    NO_MUTATION_DURING_SYNC = "NO_MUTATION_DURING_SYNC"

    @staticmethod
    def assert_unique_batch(records: "Iterable[ObjectRecord]") -> None:
        """
        A batch names each identity at most once and never mixes
        versioned and unversioned rows for one key.

        Raises:
            InvariantViolationError: On duplicate or mixed identities
            ValidationError: On an empty key
        """
        seen: set[tuple[str, str | None]] = set()
        versioned_by_key: dict[str, bool] = {}
        for record in records:
            split_key(record.key)
            identity = (record.key, record.version_id)
            if identity in seen:
                raise InvariantViolationError(
                    Invariants.SINGLE_IDENTITY,
                    f"Key {record.key!r} (version {record.version_id!r}) "
                    "appears twice in one batch.",
                )
            seen.add(identity)
            versioned = record.version_id is not None
            if versioned_by_key.setdefault(record.key, versioned) != versioned:
                raise InvariantViolationError(
                    Invariants.SINGLE_IDENTITY,
                    f"Key {record.key!r} mixes versioned and unversioned rows "
                    "in one batch.",
                )

    @staticmethod
    def assert_derived_fields(obj: "IndexedObject") -> None:
        """
        Stored derived columns equal the ones recomputed from the key.

        Raises:
            InvariantViolationError: If any derived column drifted
        """
        parts = split_key(obj.key)
        stored = (obj.parent_prefix, obj.basename, obj.extension, obj.depth, obj.is_folder)
        expected = (
            parts.parent_prefix,
            parts.basename,
            parts.extension,
            parts.depth,
            parts.is_folder,
        )
        if stored != expected:
            raise InvariantViolationError(
                Invariants.DERIVED_FIELDS,
                f"Row for {obj.key!r} stores {stored}, expected {expected}. "
                "Force a re-sync of the bucket.",
            )

    @staticmethod
    def assert_single_latest(
        conn: sqlite3.Connection, profile_id: str, bucket_name: str, key: str
    ) -> None:
        """
        At most one version of a key is flagged latest.

        Raises:
            InvariantViolationError: If several versions claim to be latest
        """
        row = conn.execute(
            """
            SELECT COUNT(*) FROM object_versions
            WHERE profile_id = ? AND bucket_name = ? AND key = ? AND is_latest = TRUE
            """,
            (profile_id, bucket_name, key),
        ).fetchone()
        if row[0] > 1:
            raise InvariantViolationError(
                Invariants.SINGLE_LATEST_VERSION,
                f"{row[0]} versions of {key!r} are flagged latest.",
            )

    @staticmethod
    def assert_no_job_in_flight(
        registry: "JobRegistry | None", job_key: "JobKey", action: str
    ) -> None:
        """
        Completion state is owned by the running job while it runs.

        Raises:
            InvariantViolationError: If a job for the key is starting or indexing
        """
        if registry is not None and registry.is_in_flight(job_key):
            raise InvariantViolationError(
                Invariants.NO_MUTATION_DURING_SYNC,
                f"Cannot {action} {job_key} while its sync job is running.",
            )
