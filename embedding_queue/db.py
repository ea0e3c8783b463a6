"""Database operations for the embedding queue and its audit log."""
import threading
import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple
from contextlib import contextmanager

from embedding_queue import settings
from embedding_queue.logging_conf import logger
from embedding_queue.queue.models import QueueItem, AuditLogEntry, audit_row

QUEUE_COLUMNS = """
    id, object_id, object_type, status, attempts, priority,
    created_at, last_attempted_at, processed_at, error_message
"""

# Mirrors embedding_queue.queue.backoff.is_eligible
ELIGIBLE_PREDICATE = """
    status IN ('pending', 'failed')
    AND attempts < %(max_retries)s
    AND (
        attempts = 0
        OR last_attempted_at IS NULL
        OR last_attempted_at
           + LEAST(%(backoff_base)s * power(2, attempts - 1), %(backoff_max)s)
             * INTERVAL '1 second'
           <= %(now)s
    )
"""


class QueueStoreError(Exception):
    """The queue table could not be read or written."""


class Database:
    """Database connection pool and operations for the embedding queue.

    Items of one batch are processed on separate threads, so every operation
    borrows its own connection from a thread-safe pool.
    """

    def __init__(self, dsn: str = None):
        self.dsn = dsn or settings.DATABASE_URL
        self._pool = None
        self._lock = threading.Lock()
        # ThreadedConnectionPool raises instead of waiting when it runs dry
        self._slots = threading.BoundedSemaphore(settings.DB_POOL_MAX)

    @property
    def pool(self) -> ThreadedConnectionPool:
        """Get or create the connection pool."""
        with self._lock:
            if self._pool is None or self._pool.closed:
                self._pool = ThreadedConnectionPool(
                    settings.DB_POOL_MIN, settings.DB_POOL_MAX, self.dsn
                )
            return self._pool

    def close(self):
        """Close all pooled connections."""
        with self._lock:
            if self._pool and not self._pool.closed:
                self._pool.closeall()
            self._pool = None

    @contextmanager
    def cursor(self):
        """Context manager for cursor with auto-commit/rollback."""
        with self._slots:
            pool = self.pool
            conn = pool.getconn()
            cur = conn.cursor(cursor_factory=RealDictCursor)
            try:
                yield cur
                conn.commit()
            except Exception:
                if not conn.closed:
                    conn.rollback()
                raise
            finally:
                cur.close()
                pool.putconn(conn, close=bool(conn.closed))

    def _eligibility_params(self, now: datetime) -> Dict[str, Any]:
        return {
            "max_retries": settings.MAX_RETRIES,
            "backoff_base": settings.BACKOFF_BASE_SECONDS,
            "backoff_max": settings.BACKOFF_MAX_SECONDS,
            "now": now,
        }

    def get_eligible_items(self, limit: int, now: datetime) -> List[QueueItem]:
        """Fetch the next batch of items that may be attempted at ``now``."""
        params = self._eligibility_params(now)
        params["limit"] = limit
        try:
            with self.cursor() as cur:
                cur.execute(f"""
                    SELECT {QUEUE_COLUMNS}
                    FROM embedding_queue
                    WHERE {ELIGIBLE_PREDICATE}
                    ORDER BY priority DESC, created_at ASC
                    LIMIT %(limit)s
                """, params)
                return [QueueItem.from_row(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise QueueStoreError(f"Failed to fetch embedding queue: {e}") from e

    def claim_item(self, item_id: str, now: datetime) -> Optional[QueueItem]:
        """Mark an item as processing (atomic claim).

        Returns the updated item, or None if another invocation got there first
        or the item stopped being eligible since it was selected.
        """
        params = self._eligibility_params(now)
        params["id"] = item_id
        with self.cursor() as cur:
            cur.execute(f"""
                UPDATE embedding_queue
                SET status = 'processing',
                    attempts = attempts + 1,
                    last_attempted_at = %(now)s
                WHERE id = %(id)s AND {ELIGIBLE_PREDICATE}
                RETURNING {QUEUE_COLUMNS}
            """, params)
            row = cur.fetchone()
        return QueueItem.from_row(row) if row else None

    def mark_completed(self, item_id: str, now: datetime) -> None:
        """Mark an item as successfully indexed."""
        with self.cursor() as cur:
            cur.execute("""
                UPDATE embedding_queue
                SET status = 'completed',
                    processed_at = %s,
                    error_message = NULL
                WHERE id = %s
            """, (now, item_id))

    def mark_failed(self, item_id: str, error: str) -> None:
        """Mark an item as failed; it becomes eligible again after its backoff."""
        with self.cursor() as cur:
            cur.execute("""
                UPDATE embedding_queue
                SET status = 'failed',
                    error_message = %s
                WHERE id = %s
            """, (error, item_id))

    def insert_audit_log(self, entry: AuditLogEntry) -> None:
        """Append one row to embedding_logs."""
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO embedding_logs (
                    provider, input_type, object_type, object_id, success,
                    error_message, processing_time_ms, endpoint
                )
                VALUES (
                    %(provider)s, %(input_type)s, %(object_type)s, %(object_id)s, %(success)s,
                    %(error_message)s, %(processing_time_ms)s, %(endpoint)s
                )
            """, audit_row(entry))

    def reset_stuck_processing(self, now: datetime, minutes: int = 30) -> int:
        """Fail items left in 'processing' by a crashed pass.

        The attempt count is kept, so the regular backoff and the retry
        budget still apply to them.
        """
        with self.cursor() as cur:
            cur.execute("""
                UPDATE embedding_queue
                SET status = 'failed',
                    error_message = 'Processing did not finish (stale claim reset)'
                WHERE status = 'processing'
                  AND last_attempted_at < %s - make_interval(mins => %s)
                RETURNING id
            """, (now, minutes))
            count = len(cur.fetchall())
            if count > 0:
                logger.warning(f"Reset {count} stuck queue items")
            return count

    def enqueue(self, object_type: str, object_id: str, priority: int = 0) -> Tuple[str, bool]:
        """Add an entity to the queue unless it is already waiting.

        Returns (queue_id, created). A transaction-scoped advisory lock on the
        entity serializes concurrent enqueues so only one of them inserts.
        """
        with self.cursor() as cur:
            cur.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))",
                (f"embedding_queue:{object_type}:{object_id}",),
            )
            cur.execute("""
                SELECT id
                FROM embedding_queue
                WHERE object_id = %s
                  AND object_type = %s
                  AND status IN ('pending', 'processing')
                LIMIT 1
            """, (object_id, object_type))
            existing = cur.fetchone()
            if existing:
                return str(existing["id"]), False

            cur.execute("""
                INSERT INTO embedding_queue (object_id, object_type, status, priority, attempts)
                VALUES (%s, %s, 'pending', %s, 0)
                RETURNING id
            """, (object_id, object_type, priority))
            return str(cur.fetchone()["id"]), True

    def get_queue_stats(self) -> Dict[str, Any]:
        """Counts per status plus dead-letter and backlog age."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT status, COUNT(*) AS count
                FROM embedding_queue
                GROUP BY status
            """)
            by_status = {row["status"]: row["count"] for row in cur.fetchall()}

            cur.execute("""
                SELECT
                    COUNT(*) FILTER (WHERE status = 'failed' AND attempts >= %s) AS dead_count,
                    MIN(created_at) FILTER (WHERE status = 'pending') AS oldest_pending_at
                FROM embedding_queue
            """, (settings.MAX_RETRIES,))
            extra = cur.fetchone()

        return {
            "by_status": by_status,
            "total": sum(by_status.values()),
            "dead_count": extra["dead_count"],
            "oldest_pending_at": extra["oldest_pending_at"],
        }

    def get_audit_rows(self, days: int = 7) -> List[Dict[str, Any]]:
        """Audit rows written in the last ``days`` days."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT provider, object_type, success, processing_time_ms
                FROM embedding_logs
                WHERE timestamp >= NOW() - make_interval(days => %s)
            """, (days,))
            return cur.fetchall()
