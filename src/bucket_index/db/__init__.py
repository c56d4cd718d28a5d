"""Database layer: connection handling, schema and migrations."""

from bucket_index.db.connection import (
    create_connection,
    execute_in_transaction,
    savepoint,
    verify_integrity,
)
from bucket_index.db.migrations import get_schema_version, initialize_index_tables

__all__ = [
    "create_connection",
    "execute_in_transaction",
    "savepoint",
    "verify_integrity",
    "initialize_index_tables",
    "get_schema_version",
]
