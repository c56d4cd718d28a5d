"""
metrics_storage.py - Durable request, cost and cache metrics.

MetricsRecorder is the only writer of metrics_requests,
metrics_daily_stats and metrics_cache_events.

Provides:
- Append-only request log, deduplicated by event id
- Daily rollups maintained incrementally (running mean and max)
- Cache hit/miss events with derived hit rate and cost savings
- Fire-and-forget submission through a background writer thread
- Retention purge and full recomputation of rollups
"""

import logging
import os
import queue
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from bucket_index.config import (
    DEFAULT_PRICING,
    METRICS_RETENTION_DAYS,
    REQUEST_CATEGORIES,
    S3Pricing,
)
from bucket_index.db.connection import create_connection, execute_in_transaction
from bucket_index.db.migrations import initialize_index_tables
from bucket_index.errors import BucketIndexError, ValidationError

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def date_for(timestamp_ms: int) -> str:
    """UTC calendar date (YYYY-MM-DD) of a millisecond timestamp."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def _cutoff_date(days: int) -> str:
    """First date included in a window of ``days`` days ending today."""
    today = datetime.now(tz=timezone.utc).date()
    return (today - timedelta(days=max(days, 1) - 1)).isoformat()


def new_request_id() -> str:
    return f"req-{_now_ms()}-{uuid.uuid4()}"


def new_cache_event_id() -> str:
    return f"cache-{_now_ms()}-{uuid.uuid4()}"


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class RequestEvent:
    """One remote (or local) request observed by the indexer."""
    operation: str
    category: str
    duration_ms: int
    success: bool
    id: str = field(default_factory=new_request_id)
    timestamp: int = field(default_factory=_now_ms)
    profile_id: str | None = None
    profile_name: str | None = None
    bucket_name: str | None = None
    object_key: str | None = None
    bytes_transferred: int | None = None
    objects_affected: int | None = None
    error_category: str | None = None
    error_message: str | None = None

    @property
    def date(self) -> str:
        return date_for(self.timestamp)


@dataclass(frozen=True)
class CacheEvent:
    """An index lookup that did (hit) or did not (miss) avoid remote calls."""
    operation: str
    hit: bool
    saved_requests: int = 1
    profile_id: str | None = None
    bucket_name: str | None = None
    id: str = field(default_factory=new_cache_event_id)
    timestamp: int = field(default_factory=_now_ms)

    @property
    def date(self) -> str:
        return date_for(self.timestamp)


@dataclass(frozen=True)
class DailyStats:
    date: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    get_requests: int = 0
    put_requests: int = 0
    list_requests: int = 0
    delete_requests: int = 0
    estimated_cost_usd: float = 0.0
    avg_duration_ms: float = 0.0
    max_duration_ms: int = 0
    bytes_downloaded: int = 0
    bytes_uploaded: int = 0
    updated_at: int = 0


@dataclass(frozen=True)
class CacheStats:
    """Cache counters over a date or a window."""
    hits: int = 0
    misses: int = 0
    saved_requests: int = 0

    @property
    def total(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Percentage of lookups served from the index."""
        if self.total == 0:
            return 0.0
        return self.hits / self.total * 100


@dataclass(frozen=True)
class CacheSummary:
    days: int
    stats: CacheStats
    list_requests: int
    efficiency_percent: float
    cost_saved_usd: float

    @property
    def hit_rate(self) -> float:
        return self.stats.hit_rate


@dataclass(frozen=True)
class OperationStats:
    operation: str
    count: int
    successful: int
    failed: int
    avg_duration_ms: float
    bytes_transferred: int


@dataclass(frozen=True)
class ErrorStats:
    error_category: str
    count: int
    last_message: str | None


@dataclass(frozen=True)
class BucketUsage:
    bucket_name: str
    request_count: int
    bytes_transferred: int


@dataclass(frozen=True)
class StorageInfo:
    request_count: int
    cache_event_count: int
    daily_stats_count: int
    oldest_date: str | None
    newest_date: str | None
    db_size_bytes: int


def _daily_from_row(row: sqlite3.Row) -> DailyStats:
    return DailyStats(
        date=row["date"],
        total_requests=row["total_requests"] or 0,
        successful_requests=row["successful_requests"] or 0,
        failed_requests=row["failed_requests"] or 0,
        get_requests=row["get_requests"] or 0,
        put_requests=row["put_requests"] or 0,
        list_requests=row["list_requests"] or 0,
        delete_requests=row["delete_requests"] or 0,
        estimated_cost_usd=row["estimated_cost_usd"] or 0.0,
        avg_duration_ms=row["avg_duration_ms"] or 0.0,
        max_duration_ms=row["max_duration_ms"] or 0,
        bytes_downloaded=row["bytes_downloaded"] or 0,
        bytes_uploaded=row["bytes_uploaded"] or 0,
        updated_at=row["updated_at"],
    )


# =============================================================================
# Recorder
# =============================================================================

_STOP = object()


class MetricsRecorder:
    """
    Writes and reads the metrics tables.

    ``record_*`` methods write synchronously. ``submit_*`` methods
    enqueue for a background writer thread and never block the caller;
    a failed write is retried, and duplicates collapse on the event id.

    Args:
        db_path: SQLite database file (may be shared with the entity store)
        pricing: Request prices used for cost estimates
        retry_delay: Seconds between attempts of a failed background write
        max_write_attempts: Attempts before a background event is dropped;
            None retries until the write succeeds
    """

    def __init__(
        self,
        db_path: str,
        pricing: S3Pricing = DEFAULT_PRICING,
        retry_delay: float = 0.5,
        max_write_attempts: int | None = None,
    ) -> None:
        self.db_path = db_path
        self.pricing = pricing
        self._retry_delay = retry_delay
        self._max_write_attempts = max_write_attempts
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._queue: queue.Queue = queue.Queue()
        self._writer: threading.Thread | None = None
        self._writer_lock = threading.Lock()
        self._closed = False

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = create_connection(self.db_path)
        return self._conn

    def initialize(self) -> None:
        with self._lock:
            initialize_index_tables(self.connection)

    def _write(self, operation: Callable[[sqlite3.Connection], Any]) -> Any:
        with self._lock:
            return execute_in_transaction(self.connection, operation)

    def _read(self, operation: Callable[[sqlite3.Connection], Any]) -> Any:
        with self._lock:
            return operation(self.connection)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def record_request(self, event: RequestEvent) -> bool:
        """
        Append a request and fold it into the day's rollup.

        Returns:
            False if an event with the same id was already recorded

        Raises:
            ValidationError: Unknown category
        """
        if event.category not in REQUEST_CATEGORIES:
            raise ValidationError(
                f"Unknown request category: {event.category}",
                field="category",
                value=event.category,
            )
        cost = self.pricing.request_cost(event.category)
        now = _now_ms()

        def _insert(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO metrics_requests
                    (id, timestamp, date, operation, category, profile_id,
                     profile_name, bucket_name, object_key, duration_ms,
                     bytes_transferred, objects_affected, success,
                     error_category, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.timestamp,
                    event.date,
                    event.operation,
                    event.category,
                    event.profile_id,
                    event.profile_name,
                    event.bucket_name,
                    event.object_key,
                    event.duration_ms,
                    event.bytes_transferred,
                    event.objects_affected,
                    event.success,
                    event.error_category,
                    event.error_message,
                ),
            )
            if cursor.rowcount == 0:
                return False
            self._fold_into_daily(conn, event, cost, now)
            return True

        return self._write(_insert)

    @staticmethod
    def _fold_into_daily(
        conn: sqlite3.Connection, event: RequestEvent, cost: float, now: int
    ) -> None:
        category = event.category
        transferred = event.bytes_transferred or 0
        conn.execute(
            """
            INSERT INTO metrics_daily_stats (date, updated_at) VALUES (?, ?)
            ON CONFLICT(date) DO NOTHING
            """,
            (event.date, now),
        )
        # Right-hand sides read the pre-update row
        conn.execute(
            """
            UPDATE metrics_daily_stats SET
                total_requests = total_requests + 1,
                successful_requests = successful_requests + ?,
                failed_requests = failed_requests + ?,
                get_requests = get_requests + ?,
                put_requests = put_requests + ?,
                list_requests = list_requests + ?,
                delete_requests = delete_requests + ?,
                estimated_cost_usd = estimated_cost_usd + ?,
                avg_duration_ms = avg_duration_ms
                    + (? - avg_duration_ms) / (total_requests + 1),
                max_duration_ms = MAX(max_duration_ms, ?),
                bytes_downloaded = bytes_downloaded + ?,
                bytes_uploaded = bytes_uploaded + ?,
                updated_at = ?
            WHERE date = ?
            """,
            (
                int(event.success),
                int(not event.success),
                int(category == "GET"),
                int(category == "PUT"),
                int(category == "LIST"),
                int(category == "DELETE"),
                cost,
                float(event.duration_ms),
                event.duration_ms,
                transferred if category == "GET" else 0,
                transferred if category == "PUT" else 0,
                now,
                event.date,
            ),
        )

    def record_cache_event(
        self,
        operation: str,
        hit: bool,
        saved_requests: int = 1,
        profile_id: str | None = None,
        bucket_name: str | None = None,
    ) -> CacheEvent:
        event = CacheEvent(
            operation=operation,
            hit=hit,
            saved_requests=saved_requests,
            profile_id=profile_id,
            bucket_name=bucket_name,
        )
        self._store_cache_event(event)
        return event

    def _store_cache_event(self, event: CacheEvent) -> bool:
        def _insert(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO metrics_cache_events
                    (id, timestamp, date, operation, hit, profile_id,
                     bucket_name, saved_requests)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.timestamp,
                    event.date,
                    event.operation,
                    event.hit,
                    event.profile_id,
                    event.bucket_name,
                    event.saved_requests,
                ),
            )
            return cursor.rowcount > 0

        return self._write(_insert)

    # -------------------------------------------------------------------------
    # Fire-and-forget
    # -------------------------------------------------------------------------

    def submit_request(self, event: RequestEvent) -> None:
        """Queue a request event; returns immediately."""
        self._enqueue(event)

    def submit_cache_event(
        self,
        operation: str,
        hit: bool,
        saved_requests: int = 1,
        profile_id: str | None = None,
        bucket_name: str | None = None,
    ) -> CacheEvent:
        event = CacheEvent(
            operation=operation,
            hit=hit,
            saved_requests=saved_requests,
            profile_id=profile_id,
            bucket_name=bucket_name,
        )
        self._enqueue(event)
        return event

    def _enqueue(self, event: RequestEvent | CacheEvent) -> None:
        if self._closed:
            logger.warning(f"Metrics recorder closed, dropping event {event.id}")
            return
        self._ensure_writer()
        self._queue.put(event)

    def _ensure_writer(self) -> None:
        with self._writer_lock:
            if self._writer is None or not self._writer.is_alive():
                self._writer = threading.Thread(
                    target=self._writer_loop, name="metrics-writer", daemon=True
                )
                self._writer.start()

    def _writer_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._persist(item)
            finally:
                self._queue.task_done()

    def _persist(self, event: RequestEvent | CacheEvent) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                if isinstance(event, RequestEvent):
                    self.record_request(event)
                else:
                    self._store_cache_event(event)
                return
            except ValidationError as e:
                logger.error(f"Dropping invalid metrics event {event.id}: {e}")
                return
            except BucketIndexError as e:
                logger.warning(f"Metrics write failed (attempt {attempt}): {e}")
                if self._max_write_attempts is not None and attempt >= self._max_write_attempts:
                    logger.error(f"Giving up on metrics event {event.id}")
                    return
                time.sleep(min(self._retry_delay * attempt, 5.0))

    def flush(self) -> None:
        """Block until every queued event has been written."""
        self._queue.join()

    def close(self) -> None:
        """Drain the queue, stop the writer and close the connection."""
        if self._closed:
            return
        self._closed = True
        with self._writer_lock:
            writer = self._writer
        if writer is not None and writer.is_alive():
            self._queue.put(_STOP)
            writer.join()
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "MetricsRecorder":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_daily_stats(self, date: str) -> DailyStats | None:
        row = self._read(
            lambda conn: conn.execute(
                "SELECT * FROM metrics_daily_stats WHERE date = ?", (date,)
            ).fetchone()
        )
        return _daily_from_row(row) if row is not None else None

    def get_stats_history(self, days: int = 7) -> list[DailyStats]:
        rows = self._read(
            lambda conn: conn.execute(
                "SELECT * FROM metrics_daily_stats WHERE date >= ? ORDER BY date",
                (_cutoff_date(days),),
            ).fetchall()
        )
        return [_daily_from_row(row) for row in rows]

    def _cache_stats(self, where: str, params: tuple) -> CacheStats:
        row = self._read(
            lambda conn: conn.execute(
                f"""
                SELECT COALESCE(SUM(CASE WHEN hit THEN 1 ELSE 0 END), 0),
                       COALESCE(SUM(CASE WHEN hit THEN 0 ELSE 1 END), 0),
                       COALESCE(SUM(CASE WHEN hit THEN saved_requests ELSE 0 END), 0)
                FROM metrics_cache_events WHERE {where}
                """,
                params,
            ).fetchone()
        )
        return CacheStats(hits=row[0], misses=row[1], saved_requests=row[2])

    def get_daily_cache_stats(self, date: str) -> CacheStats:
        """Hits, misses and hit rate for one date, derived from the events."""
        return self._cache_stats("date = ?", (date,))

    def get_cache_summary(self, days: int = 30) -> CacheSummary:
        """
        Cache effectiveness over a window.

        Efficiency compares requests saved to LIST requests actually made.
        """
        cutoff = _cutoff_date(days)
        stats = self._cache_stats("date >= ?", (cutoff,))
        list_requests = self._read(
            lambda conn: conn.execute(
                """
                SELECT COUNT(*) FROM metrics_requests
                WHERE date >= ? AND category = 'LIST'
                """,
                (cutoff,),
            ).fetchone()[0]
        )
        denominator = stats.saved_requests + list_requests
        efficiency = stats.saved_requests / denominator * 100 if denominator else 0.0
        return CacheSummary(
            days=days,
            stats=stats,
            list_requests=list_requests,
            efficiency_percent=efficiency,
            cost_saved_usd=stats.saved_requests / 1000 * self.pricing.list_per_1000,
        )

    def get_operation_stats(self, days: int = 7) -> list[OperationStats]:
        rows = self._read(
            lambda conn: conn.execute(
                """
                SELECT operation,
                       COUNT(*) AS count,
                       SUM(CASE WHEN success THEN 1 ELSE 0 END) AS successful,
                       AVG(duration_ms) AS avg_duration_ms,
                       COALESCE(SUM(bytes_transferred), 0) AS bytes_transferred
                FROM metrics_requests
                WHERE date >= ?
                GROUP BY operation
                ORDER BY count DESC
                """,
                (_cutoff_date(days),),
            ).fetchall()
        )
        return [
            OperationStats(
                operation=row["operation"],
                count=row["count"],
                successful=row["successful"],
                failed=row["count"] - row["successful"],
                avg_duration_ms=row["avg_duration_ms"] or 0.0,
                bytes_transferred=row["bytes_transferred"],
            )
            for row in rows
        ]

    def get_error_stats(self, days: int = 7) -> list[ErrorStats]:
        rows = self._read(
            lambda conn: conn.execute(
                """
                SELECT COALESCE(error_category, 'Unknown') AS category,
                       COUNT(*) AS count,
                       (SELECT r2.error_message FROM metrics_requests r2
                        WHERE r2.success = FALSE AND r2.date >= ?
                          AND COALESCE(r2.error_category, 'Unknown')
                              = COALESCE(r.error_category, 'Unknown')
                        ORDER BY r2.timestamp DESC LIMIT 1) AS last_message
                FROM metrics_requests r
                WHERE success = FALSE AND date >= ?
                GROUP BY category
                ORDER BY count DESC
                """,
                (_cutoff_date(days), _cutoff_date(days)),
            ).fetchall()
        )
        return [
            ErrorStats(
                error_category=row["category"],
                count=row["count"],
                last_message=row["last_message"],
            )
            for row in rows
        ]

    def get_top_buckets(self, days: int = 7, limit: int = 10) -> list[BucketUsage]:
        rows = self._read(
            lambda conn: conn.execute(
                """
                SELECT bucket_name,
                       COUNT(*) AS request_count,
                       COALESCE(SUM(bytes_transferred), 0) AS bytes_transferred
                FROM metrics_requests
                WHERE date >= ? AND bucket_name IS NOT NULL
                GROUP BY bucket_name
                ORDER BY request_count DESC
                LIMIT ?
                """,
                (_cutoff_date(days), limit),
            ).fetchall()
        )
        return [
            BucketUsage(
                bucket_name=row["bucket_name"],
                request_count=row["request_count"],
                bytes_transferred=row["bytes_transferred"],
            )
            for row in rows
        ]

    def get_recent_requests(self, limit: int = 50) -> list[RequestEvent]:
        rows = self._read(
            lambda conn: conn.execute(
                "SELECT * FROM metrics_requests ORDER BY timestamp DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        )
        return [
            RequestEvent(
                id=row["id"],
                timestamp=row["timestamp"],
                operation=row["operation"],
                category=row["category"],
                duration_ms=row["duration_ms"],
                success=bool(row["success"]),
                profile_id=row["profile_id"],
                profile_name=row["profile_name"],
                bucket_name=row["bucket_name"],
                object_key=row["object_key"],
                bytes_transferred=row["bytes_transferred"],
                objects_affected=row["objects_affected"],
                error_category=row["error_category"],
                error_message=row["error_message"],
            )
            for row in rows
        ]

    def get_storage_info(self) -> StorageInfo:
        def _info(conn: sqlite3.Connection) -> StorageInfo:
            requests = conn.execute("SELECT COUNT(*) FROM metrics_requests").fetchone()[0]
            cache = conn.execute("SELECT COUNT(*) FROM metrics_cache_events").fetchone()[0]
            daily = conn.execute(
                "SELECT COUNT(*), MIN(date), MAX(date) FROM metrics_daily_stats"
            ).fetchone()
            return StorageInfo(
                request_count=requests,
                cache_event_count=cache,
                daily_stats_count=daily[0],
                oldest_date=daily[1],
                newest_date=daily[2],
                db_size_bytes=(
                    os.path.getsize(self.db_path) if os.path.exists(self.db_path) else 0
                ),
            )

        return self._read(_info)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def recompute_daily_stats(self, date: str) -> DailyStats | None:
        """
        Rebuild one day's rollup from the request log.

        Repairs drift in the incrementally maintained aggregates.
        """
        pricing = self.pricing

        def _recompute(conn: sqlite3.Connection) -> None:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN success THEN 1 ELSE 0 END), 0) AS ok,
                       COALESCE(SUM(category = 'GET'), 0) AS gets,
                       COALESCE(SUM(category = 'PUT'), 0) AS puts,
                       COALESCE(SUM(category = 'LIST'), 0) AS lists,
                       COALESCE(SUM(category = 'DELETE'), 0) AS deletes,
                       COALESCE(AVG(duration_ms), 0) AS avg_ms,
                       COALESCE(MAX(duration_ms), 0) AS max_ms,
                       COALESCE(SUM(CASE WHEN category = 'GET'
                                    THEN bytes_transferred ELSE 0 END), 0) AS down,
                       COALESCE(SUM(CASE WHEN category = 'PUT'
                                    THEN bytes_transferred ELSE 0 END), 0) AS up
                FROM metrics_requests WHERE date = ?
                """,
                (date,),
            ).fetchone()
            if row["total"] == 0:
                conn.execute("DELETE FROM metrics_daily_stats WHERE date = ?", (date,))
                return
            cost = (
                row["gets"] * pricing.request_cost("GET")
                + row["puts"] * pricing.request_cost("PUT")
                + row["lists"] * pricing.request_cost("LIST")
                + row["deletes"] * pricing.request_cost("DELETE")
            )
            conn.execute(
                """
                INSERT OR REPLACE INTO metrics_daily_stats
                    (date, total_requests, successful_requests, failed_requests,
                     get_requests, put_requests, list_requests, delete_requests,
                     estimated_cost_usd, avg_duration_ms, max_duration_ms,
                     bytes_downloaded, bytes_uploaded, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    date,
                    row["total"],
                    row["ok"],
                    row["total"] - row["ok"],
                    row["gets"],
                    row["puts"],
                    row["lists"],
                    row["deletes"],
                    cost,
                    float(row["avg_ms"]),
                    row["max_ms"],
                    row["down"],
                    row["up"],
                    _now_ms(),
                ),
            )

        self._write(_recompute)
        return self.get_daily_stats(date)

    def purge_old_data(self, retention_days: int = METRICS_RETENTION_DAYS) -> int:
        """Delete requests, rollups and cache events older than the window."""
        cutoff = _cutoff_date(retention_days)

        def _purge(conn: sqlite3.Connection) -> int:
            removed = conn.execute(
                "DELETE FROM metrics_requests WHERE date < ?", (cutoff,)
            ).rowcount
            conn.execute("DELETE FROM metrics_daily_stats WHERE date < ?", (cutoff,))
            removed += conn.execute(
                "DELETE FROM metrics_cache_events WHERE date < ?", (cutoff,)
            ).rowcount
            return removed

        removed = self._write(_purge)
        logger.info(f"Purged {removed} metrics rows older than {cutoff}")
        return removed

    def purge_cache_events(self, retention_days: int = METRICS_RETENTION_DAYS) -> int:
        cutoff = _cutoff_date(retention_days)
        return self._write(
            lambda conn: conn.execute(
                "DELETE FROM metrics_cache_events WHERE date < ?", (cutoff,)
            ).rowcount
        )

    def clear_all(self) -> None:
        def _clear(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM metrics_requests")
            conn.execute("DELETE FROM metrics_daily_stats")
            conn.execute("DELETE FROM metrics_cache_events")

        self._write(_clear)
        logger.info("Cleared all metrics")
