"""
connection.py - SQLite database connection management.

Handles connection creation, PRAGMA configuration and the
transaction helpers every writer goes through.

All connections use WAL mode so readers never block the sync writer.
"""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from bucket_index.config import SQLITE_PRAGMAS
from bucket_index.errors import DatabaseError

logger = logging.getLogger("bucket_index.db")


def create_connection(db_path: str) -> sqlite3.Connection:
    """
    Create a new SQLite connection with proper configuration.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Configured sqlite3.Connection

    Raises:
        DatabaseError: If connection fails
    """
    try:
        conn = sqlite3.connect(
            db_path,
            isolation_level=None,  # Manual transaction control
            check_same_thread=False,
        )
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to connect to database: {e}",
            operation="connect",
        ) from e

    conn.row_factory = sqlite3.Row
    _apply_pragmas(conn)
    return conn


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    for pragma, value in SQLITE_PRAGMAS.items():
        try:
            conn.execute(f"PRAGMA {pragma} = {value}")
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to set PRAGMA {pragma}: {e}",
                operation="pragma",
                sql=f"PRAGMA {pragma} = {value}",
            ) from e


def execute_in_transaction(
    conn: sqlite3.Connection,
    operation: Callable[[sqlite3.Connection], Any],
) -> Any:
    """
    Execute an operation within an IMMEDIATE transaction.

    Ensures atomicity: all changes commit or all rollback.
    Domain exceptions raised by the operation propagate unchanged
    after the rollback; SQLite failures are wrapped in DatabaseError.

    Args:
        conn: SQLite connection
        operation: Callable that performs database operations

    Returns:
        Result of operation

    Raises:
        DatabaseError: If the transaction fails at the SQLite level
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            result = operation(conn)
            conn.execute("COMMIT")
            return result
        except BaseException:
            conn.execute("ROLLBACK")
            raise
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Transaction failed: {e}",
            operation="transaction",
        ) from e


@contextmanager
def savepoint(conn: sqlite3.Connection, name: str) -> Iterator[None]:
    """
    Nested atomic section inside an open transaction.

    Rolls back to the savepoint on failure and re-raises.
    """
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield
        conn.execute(f"RELEASE SAVEPOINT {name}")
    except Exception as e:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        logger.error(f"Savepoint {name} rolled back: {e}")
        raise


def verify_integrity(conn: sqlite3.Connection) -> bool:
    """
    Run SQLite integrity check.

    Returns:
        True if database is healthy
    """
    try:
        result = conn.execute("PRAGMA integrity_check").fetchone()
        return result is not None and result[0] == "ok"
    except sqlite3.Error:
        return False


def optimize(conn: sqlite3.Connection) -> None:
    """Reclaim free pages and refresh planner statistics."""
    try:
        conn.execute("VACUUM")
        conn.execute("ANALYZE")
    except sqlite3.Error as e:
        raise DatabaseError(f"Optimize failed: {e}", operation="optimize") from e
    logger.info("Database optimized")
