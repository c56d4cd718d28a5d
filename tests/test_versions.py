"""
test_versions.py - Tests for the version ledger.
"""

import pytest

from bucket_index.errors import InvariantViolationError, ValidationError
from bucket_index.store.records import ObjectRecord
from bucket_index.versions import ObjectVersion, VersionLedger

P, B = "default", "versioned"


class TestVersionLedger:
    """At most one latest version per key."""

    def test_new_latest_clears_previous(self, store):
        ledger = VersionLedger(store)
        ledger.record_version(P, B, ObjectVersion("doc.txt", "v1", size=1, is_latest=True))
        ledger.record_version(P, B, ObjectVersion("doc.txt", "v2", size=2, is_latest=True))

        latest = ledger.latest_view(P, B, "doc.txt")
        assert latest.version_id == "v2"
        flags = {v.version_id: v.is_latest for v in ledger.list_versions(P, B, "doc.txt")}
        assert flags == {"v1": False, "v2": True}
        ledger.check_latest_invariant(P, B, "doc.txt")

    def test_older_version_does_not_steal_latest(self, store):
        ledger = VersionLedger(store)
        ledger.record_versions(
            P,
            B,
            [
                ObjectVersion("doc.txt", "v2", is_latest=True),
                ObjectVersion("doc.txt", "v1", is_latest=False),
            ],
        )
        assert ledger.latest_view(P, B, "doc.txt").version_id == "v2"
        assert len(ledger.list_versions(P, B, "doc.txt")) == 2

    def test_delete_marker_hides_key(self, store):
        store.upsert_objects(P, B, [ObjectRecord("dir/doc.txt", size=5)])
        store.mark_prefix_complete(P, B, "dir/")
        ledger = VersionLedger(store)

        ledger.record_version(P, B, ObjectVersion("dir/doc.txt", "v1", is_latest=True))
        ledger.record_version(
            P, B, ObjectVersion("dir/doc.txt", "dm1", is_latest=True, is_delete_marker=True)
        )

        assert ledger.latest_view(P, B, "dir/doc.txt") is None
        assert store.get_object(P, B, "dir/doc.txt") is None
        assert store.get_prefix_status(P, B, "dir/").is_complete is False
        assert len(ledger.list_versions(P, B, "dir/doc.txt")) == 2

    def test_unknown_key_has_no_latest(self, store):
        assert VersionLedger(store).latest_view(P, B, "missing") is None

    def test_empty_version_id_rejected(self, store):
        with pytest.raises(ValidationError):
            VersionLedger(store).record_version(P, B, ObjectVersion("a", ""))

    def test_invariant_check_detects_corruption(self, store):
        ledger = VersionLedger(store)
        ledger.record_version(P, B, ObjectVersion("k", "v1", is_latest=True))
        ledger.record_version(P, B, ObjectVersion("k", "v2", is_latest=False))
        store.connection.execute("UPDATE object_versions SET is_latest = TRUE")

        with pytest.raises(InvariantViolationError):
            ledger.check_latest_invariant(P, B, "k")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
