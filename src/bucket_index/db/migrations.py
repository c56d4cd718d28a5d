"""
migrations.py - Database initialization and schema management.

Handles creation of index tables and the schema_version record
that gates future migrations.
"""

import logging
import sqlite3
import time

from bucket_index.config import SCHEMA_VERSION
from bucket_index.db.schema import ALL_SCHEMA_STATEMENTS
from bucket_index.errors import DatabaseError, SchemaError

logger = logging.getLogger("bucket_index.db")


def initialize_index_tables(conn: sqlite3.Connection) -> int:
    """
    Create all index tables and record the schema version.

    This is idempotent: can be called multiple times safely.
    If already initialized, the stored version is verified.

    Args:
        conn: SQLite connection

    Returns:
        Schema version of the database

    Raises:
        DatabaseError: If schema creation fails
        SchemaError: If schema version mismatch detected
    """
    existing = _get_stored_version(conn)
    if existing is not None:
        _verify_schema_version(existing)
        return existing

    try:
        for statement in ALL_SCHEMA_STATEMENTS:
            # Split multi-statement strings
            for sql in statement.strip().split(";"):
                sql = sql.strip()
                if sql:
                    conn.execute(sql)
        conn.execute(
            "INSERT INTO schema_version (version, updated_at) VALUES (?, ?)",
            (SCHEMA_VERSION, int(time.time() * 1000)),
        )
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to create index tables: {e}",
            operation="create_tables",
        ) from e

    logger.info(f"Initialized index schema v{SCHEMA_VERSION}")
    return SCHEMA_VERSION


def _get_stored_version(conn: sqlite3.Connection) -> int | None:
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        # Table doesn't exist
        return None
    if row is None or row[0] is None:
        return None
    return int(row[0])


def _verify_schema_version(stored_version: int) -> None:
    if stored_version != SCHEMA_VERSION:
        raise SchemaError(
            "Schema version mismatch",
            expected=SCHEMA_VERSION,
            actual=stored_version,
        )


def get_schema_version(conn: sqlite3.Connection) -> int:
    """
    Get the schema version for this database.

    Raises:
        SchemaError: If not initialized
    """
    version = _get_stored_version(conn)
    if version is None:
        raise SchemaError("Database not initialized: schema_version not found")
    return version
