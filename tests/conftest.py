"""
conftest.py - pytest fixtures for bucket_index tests.
"""

import itertools
import os
import tempfile
from typing import Callable

import pytest

from bucket_index import EntityStore, MetricsRecorder
from bucket_index.errors import TransientRemoteError
from bucket_index.store.records import ObjectRecord
from bucket_index.sync.capability import ListingCapability, ListPage


class FakeListing(ListingCapability):
    """
    In-memory bucket listing with ListObjectsV2 paging semantics.

    Keys are listed in order; the continuation token is the index of the
    next key. ``fail_page`` queues failures for the page at a token.
    ``before_return`` runs with the call number before a page is handed out.
    """

    def __init__(self, keys: list[str] | None = None, size: int = 10):
        self.objects = {key: ObjectRecord(key=key, size=size) for key in (keys or [])}
        self.calls: list[tuple[str, str | None, int]] = []
        self.page_failures: dict[str | None, list[BaseException]] = {}
        self.before_return: Callable[[int], object] | None = None
        self.acl: str | None = None
        self.versioning: bool | None = None
        self.encryption: str | None = None
        self.acl_error: BaseException | None = None

    def fail_page(self, token: str | None, *errors: BaseException) -> None:
        """Raise ``errors`` one by one on the next fetches of the page at ``token``."""
        self.page_failures.setdefault(token, []).extend(errors)

    async def list_page(self, bucket, prefix, continuation_token, page_size):
        self.calls.append((prefix, continuation_token, page_size))
        pending = self.page_failures.get(continuation_token)
        if pending:
            raise pending.pop(0)

        keys = sorted(k for k in self.objects if k.startswith(prefix))
        start = int(continuation_token) if continuation_token else 0
        chunk = keys[start:start + page_size]
        end = start + len(chunk)
        next_token = str(end) if end < len(keys) else None

        if self.before_return is not None:
            result = self.before_return(len(self.calls))
            if hasattr(result, "__await__"):
                await result

        return ListPage(
            objects=[self.objects[k] for k in chunk],
            common_prefixes=[],
            next_token=next_token,
            is_truncated=next_token is not None,
        )

    async def get_bucket_acl(self, bucket):
        if self.acl_error is not None:
            raise self.acl_error
        return self.acl

    async def get_bucket_versioning(self, bucket):
        return self.versioning

    async def get_bucket_encryption(self, bucket):
        return self.encryption


async def instant_sleep(delay: float) -> None:
    """Backoff stand-in that never waits."""
    return None


def make_keys(count: int, prefix: str = "data/") -> list[str]:
    return [f"{prefix}file-{i:05d}.bin" for i in range(count)]


def throttled() -> TransientRemoteError:
    return TransientRemoteError("Slow down", operation="ListObjectsV2", code="SlowDown")


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test databases."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def db_path(temp_dir):
    return os.path.join(temp_dir, "index.db")


@pytest.fixture
def clock():
    """Strictly increasing millisecond clock."""
    counter = itertools.count(1_700_000_000_000, 1000)
    return lambda: next(counter)


@pytest.fixture
def store(db_path, clock):
    """Create an initialized EntityStore in a temp directory."""
    store = EntityStore(db_path, clock=clock)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def recorder(db_path, store):
    """MetricsRecorder sharing the store's database file."""
    recorder = MetricsRecorder(db_path, retry_delay=0.01)
    recorder.initialize()
    yield recorder
    recorder.close()
