"""Entity store: objects, prefix status and bucket settings."""

from bucket_index.store.entity_store import EntityStore, PageCommit, PassStart
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

__all__ = [
    "EntityStore",
    "PageCommit",
    "PassStart",
    "BucketInfo",
    "BucketTotals",
    "ChildEntry",
    "IndexedObject",
    "ObjectRecord",
    "PrefixAggregate",
    "PrefixStatus",
    "StorageClassStats",
    "UpsertResult",
]
