"""
test_query.py - Tests for the read-only query façade.
"""

import pytest

from bucket_index import QueryFacade
from bucket_index.errors import ValidationError
from bucket_index.store.records import ObjectRecord

P, B = "default", "photos"


@pytest.fixture
def indexed(store):
    store.upsert_objects(
        P,
        B,
        [
            ObjectRecord("2024/jan/a.jpg", size=100, storage_class="STANDARD"),
            ObjectRecord("2024/jan/b.JPG", size=200, storage_class="STANDARD"),
            ObjectRecord("2024/feb/c.png", size=300, storage_class="GLACIER"),
            ObjectRecord("readme.txt", size=5, storage_class="STANDARD"),
        ],
    )
    return store


class TestBrowse:

    def test_root_children(self, indexed):
        result = QueryFacade(indexed).browse(P, B)

        assert [f.name for f in result.folders] == ["2024/"]
        assert [f.name for f in result.files] == ["readme.txt"]
        assert result.folders[0].objects_count == 3
        assert result.folders[0].size == 600
        assert result.is_complete is False

    def test_nested_folder(self, indexed):
        result = QueryFacade(indexed).browse(P, B, "2024/")
        assert [f.key for f in result.folders] == ["2024/feb/", "2024/jan/"]
        assert result.files == []

    def test_non_folder_prefix_rejected(self, indexed):
        with pytest.raises(ValidationError):
            QueryFacade(indexed).browse(P, B, "2024")

    def test_cache_hits_and_misses_recorded(self, indexed, recorder):
        facade = QueryFacade(indexed, recorder)

        facade.browse(P, B)
        indexed.mark_prefix_complete(P, B, "")
        complete = facade.browse(P, B)
        recorder.flush()

        assert complete.is_complete is True
        summary = recorder.get_cache_summary(days=1)
        assert (summary.stats.hits, summary.stats.misses) == (1, 1)
        assert summary.stats.saved_requests == 1


class TestStats:

    def test_prefix_stats(self, indexed):
        stats = QueryFacade(indexed).prefix_stats(P, B, "2024/jan/")

        assert stats.aggregate.objects_count == 2
        assert stats.aggregate.total_size == 300
        assert stats.is_complete is False

    def test_complete_ancestor_makes_prefix_complete(self, indexed):
        indexed.mark_prefix_complete(P, B, "2024/")
        assert QueryFacade(indexed).prefix_stats(P, B, "2024/feb/").is_complete is True

    def test_bucket_stats(self, indexed):
        indexed.mark_prefix_complete(P, B, "")
        totals = QueryFacade(indexed).bucket_stats(P, B)

        assert totals.total_objects == 4
        assert totals.total_size == 605
        assert totals.is_complete is True
        classes = {row.storage_class: row.object_count for row in totals.storage_classes}
        assert classes == {"STANDARD": 3, "GLACIER": 1}

    def test_unknown_bucket_is_empty(self, store):
        totals = QueryFacade(store).bucket_stats(P, "nothing")
        assert totals.total_objects == 0
        assert totals.is_complete is False

    def test_bucket_indexes(self, indexed):
        indexed.upsert_objects(P, "other", [ObjectRecord("x", size=1)])
        names = [t.bucket_name for t in QueryFacade(indexed).bucket_indexes(P)]
        assert names == ["other", "photos"]


class TestSearch:

    def test_case_insensitive(self, indexed):
        results = QueryFacade(indexed).search(P, B, "jpg")
        assert [r.key for r in results] == ["2024/jan/a.jpg", "2024/jan/b.JPG"]

    def test_restricted_to_prefix_and_limited(self, indexed):
        facade = QueryFacade(indexed)
        assert [r.key for r in facade.search(P, B, "2024", prefix="2024/feb/")] == [
            "2024/feb/c.png"
        ]
        assert len(facade.search(P, B, "", limit=2)) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
