"""
config.py - Configuration constants for bucket_index.

All configuration is immutable and defined at module level.
No mutable global state is permitted.
"""

from dataclasses import dataclass
from typing import Final

# Schema version for index tables
# Increment this when the persisted schema changes
SCHEMA_VERSION: Final[int] = 1

# SQLite PRAGMA settings for index databases
# These ensure durability and consistency
SQLITE_PRAGMAS: Final[dict[str, str]] = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "foreign_keys": "ON",
    "busy_timeout": "5000",
}

# Environment variable consulted by the CLI for the database location
DB_PATH_ENV_VAR: Final[str] = "BUCKET_INDEX_DB_PATH"
DEFAULT_DB_FILENAME: Final[str] = "bucket_index.db"

# Listing defaults (ListObjectsV2 caps pages at 1000 keys)
DEFAULT_PAGE_SIZE: Final[int] = 1000
MAX_PAGE_SIZE: Final[int] = 1000

# Retry policy for transient remote failures within one page fetch
DEFAULT_MAX_RETRIES: Final[int] = 5
RETRY_BASE_DELAY_SECONDS: Final[float] = 0.5
RETRY_MAX_DELAY_SECONDS: Final[float] = 30.0

# Bucket settings (ACL, encryption) are refreshed after this many seconds
ACL_CACHE_TTL_SECONDS: Final[int] = 3600

# Rough per-row storage overhead used by the index size estimate
ESTIMATED_ROW_OVERHEAD_BYTES: Final[int] = 200

# Metrics retention
METRICS_RETENTION_DAYS: Final[int] = 30

# Request categories accepted by metrics_requests.category
REQUEST_CATEGORIES: Final[frozenset[str]] = frozenset(
    {"GET", "PUT", "LIST", "DELETE", "LOCAL"}
)

# Remote operation names recorded by the sync engine
OPERATION_LIST_OBJECTS: Final[str] = "ListObjectsV2"
OPERATION_GET_BUCKET_ACL: Final[str] = "GetBucketAcl"
OPERATION_GET_BUCKET_VERSIONING: Final[str] = "GetBucketVersioning"
OPERATION_GET_BUCKET_ENCRYPTION: Final[str] = "GetBucketEncryption"


@dataclass(frozen=True)
class S3Pricing:
    """Request prices in USD per 1000 requests."""
    get_per_1000: float = 0.0004
    put_per_1000: float = 0.005
    list_per_1000: float = 0.005
    delete_per_1000: float = 0.0

    def request_cost(self, category: str) -> float:
        """Cost of a single request of the given category."""
        per_1000 = {
            "GET": self.get_per_1000,
            "PUT": self.put_per_1000,
            "LIST": self.list_per_1000,
            "DELETE": self.delete_per_1000,
        }.get(category, 0.0)
        return per_1000 / 1000


DEFAULT_PRICING: Final[S3Pricing] = S3Pricing()
