"""
query.py - Read-only façade over the index.

Answers browse, stats and search requests from the entity store and
reports each answer to the metrics recorder as a cache hit (served from
a complete index) or miss (a remote listing is still needed).
"""

import logging
import math
from dataclasses import dataclass

from bucket_index.config import DEFAULT_PAGE_SIZE
from bucket_index.metrics import IndexLogger
from bucket_index.metrics_storage import MetricsRecorder
from bucket_index.store.entity_store import EntityStore
from bucket_index.store.records import (
    BucketTotals,
    ChildEntry,
    IndexedObject,
    PrefixAggregate,
    PrefixStatus,
)

logger = logging.getLogger(__name__)

BROWSE_OPERATION = "ListObjects"
STATS_OPERATION = "BucketStats"
SEARCH_OPERATION = "SearchObjects"


@dataclass(frozen=True)
class BrowseResult:
    """Direct children of a folder as currently indexed."""
    entries: list[ChildEntry]
    prefix_status: PrefixStatus | None
    is_complete: bool

    @property
    def folders(self) -> list[ChildEntry]:
        return [entry for entry in self.entries if entry.is_folder]

    @property
    def files(self) -> list[ChildEntry]:
        return [entry for entry in self.entries if not entry.is_folder]


@dataclass(frozen=True)
class PrefixStats:
    prefix: str
    aggregate: PrefixAggregate
    is_complete: bool
    status: PrefixStatus | None


class QueryFacade:
    """
    Consistent read snapshots for UIs and the CLI.

    Args:
        store: Entity store to read from
        recorder: Optional metrics recorder for cache hit/miss events
    """

    def __init__(self, store: EntityStore, recorder: MetricsRecorder | None = None) -> None:
        self.store = store
        self.recorder = recorder
        self._index_logger = IndexLogger("bucket_index.query")

    def browse(self, profile_id: str, bucket_name: str, prefix: str = "") -> BrowseResult:
        """
        List a folder from the index.

        Raises:
            ValidationError: If prefix is neither root nor ends with '/'
        """
        entries = self.store.get_children(profile_id, bucket_name, prefix)
        status = self.store.get_prefix_status(profile_id, bucket_name, prefix)
        complete = self.store.is_prefix_complete(profile_id, bucket_name, prefix)
        saved = max(1, math.ceil(len(entries) / DEFAULT_PAGE_SIZE))
        self._report(BROWSE_OPERATION, complete, profile_id, bucket_name, saved)
        return BrowseResult(entries=entries, prefix_status=status, is_complete=complete)

    def bucket_stats(self, profile_id: str, bucket_name: str) -> BucketTotals:
        totals = self.store.bucket_totals(profile_id, bucket_name)
        saved = max(1, math.ceil(totals.total_objects / DEFAULT_PAGE_SIZE))
        self._report(STATS_OPERATION, totals.is_complete, profile_id, bucket_name, saved)
        return totals

    def prefix_stats(self, profile_id: str, bucket_name: str, prefix: str = "") -> PrefixStats:
        aggregate = self.store.aggregate(profile_id, bucket_name, prefix)
        status = self.store.get_prefix_status(profile_id, bucket_name, prefix)
        complete = self.store.is_prefix_complete(profile_id, bucket_name, prefix)
        saved = max(1, math.ceil(aggregate.objects_count / DEFAULT_PAGE_SIZE))
        self._report(STATS_OPERATION, complete, profile_id, bucket_name, saved)
        return PrefixStats(
            prefix=prefix, aggregate=aggregate, is_complete=complete, status=status
        )

    def search(
        self,
        profile_id: str,
        bucket_name: str,
        query: str,
        prefix: str = "",
        limit: int | None = 100,
    ) -> list[IndexedObject]:
        """Case-insensitive substring search over indexed keys."""
        results = self.store.search_objects(profile_id, bucket_name, query, prefix, limit)
        complete = self.store.is_prefix_complete(profile_id, bucket_name, prefix)
        saved = max(1, math.ceil(len(results) / DEFAULT_PAGE_SIZE))
        self._report(SEARCH_OPERATION, complete, profile_id, bucket_name, saved)
        return results

    def bucket_indexes(self, profile_id: str) -> list[BucketTotals]:
        """Index summary of every bucket known for a profile."""
        return self.store.list_bucket_indexes(profile_id)

    def _report(
        self,
        operation: str,
        hit: bool,
        profile_id: str,
        bucket_name: str,
        saved_requests: int,
    ) -> None:
        self._index_logger.cache_event(operation, hit, job_key=f"{profile_id}:{bucket_name}")
        if self.recorder is None:
            return
        self.recorder.submit_cache_event(
            operation,
            hit,
            saved_requests=saved_requests if hit else 0,
            profile_id=profile_id,
            bucket_name=bucket_name,
        )
