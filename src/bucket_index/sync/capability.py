"""
capability.py - Abstract base class for remote listing capabilities.

The sync engine never talks to the network itself: an authenticated
client is injected as a ListingCapability.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from bucket_index.store.records import ObjectRecord


@dataclass(frozen=True)
class ListPage:
    """One page of a paginated listing."""
    objects: list[ObjectRecord] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)
    next_token: str | None = None
    is_truncated: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.next_token is None and not self.is_truncated

    @property
    def last_key(self) -> str | None:
        return self.objects[-1].key if self.objects else None


class ListingCapability(ABC):
    """
    Abstract base class for remote listing clients.

    Implementations must provide ``list_page``. The bucket settings
    lookups are optional; returning None means "unknown".

    Failures may be raised as any exception. They are classified once
    by the sync engine (see bucket_index.sync.retry).
    """

    @abstractmethod
    async def list_page(
        self,
        bucket: str,
        prefix: str,
        continuation_token: str | None,
        page_size: int,
    ) -> ListPage:
        """
        Fetch one page of keys under ``prefix``.

        Returns:
            The page; ``next_token`` is set whenever more pages follow
        """
        pass

    async def get_bucket_acl(self, bucket: str) -> str | None:
        """Serialized ACL snapshot of the bucket."""
        return None

    async def get_bucket_versioning(self, bucket: str) -> bool | None:
        """Whether versioning is enabled."""
        return None

    async def get_bucket_encryption(self, bucket: str) -> str | None:
        """Default encryption algorithm; empty string when encryption is off."""
        return None
