"""Process the embedding queue: select, index, record."""
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Callable, List, Optional

from embedding_queue import settings
from embedding_queue.db import Database
from embedding_queue.indexing_client import IndexingClient, IndexingOutcome
from embedding_queue.logging_conf import logger
from embedding_queue.queue.backoff import is_dead, next_eligible_at
from embedding_queue.queue.models import AuditLogEntry, BatchReport, ItemResult, QueueItem


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueProcessor:
    """Runs processing passes over the embedding queue.

    A pass is stateless: eligibility is recomputed from the table every time,
    so any number of invocations (scheduler, manual trigger) can overlap. The
    conditional claim in ``Database.claim_item`` keeps them from processing
    the same item twice.
    """

    def __init__(
        self,
        db: Database = None,
        client: IndexingClient = None,
        max_concurrency: int = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db or Database()
        self.client = client or IndexingClient()
        self.max_concurrency = max_concurrency or settings.MAX_CONCURRENCY
        self.clock = clock

    def run_batch(self, batch_size: int = None, source: str = "manual") -> BatchReport:
        """
        Run one processing pass.

        Args:
            batch_size: Maximum number of items to select
            source: Free-text tag of the caller, for logs and the report

        Returns:
            BatchReport with one result per item this pass processed

        Raises:
            QueueStoreError if the queue could not be read
        """
        batch_size = settings.BATCH_SIZE if batch_size is None else batch_size
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        start = time.monotonic()
        now = self.clock()
        self._reset_stuck_items(now)
        items = self.db.get_eligible_items(batch_size, now)
        report = BatchReport(source=source)

        if not items:
            logger.info(f"No items in the embedding queue (source: {source})")
            return report

        logger.info(f"Processing {len(items)} items from the embedding queue (source: {source})")
        report.results = self._process_concurrently(items)
        report.total_processing_time_ms = _elapsed_ms(start)

        logger.info(
            f"Pass finished (source: {source}): {report.success_count} succeeded, "
            f"{report.failure_count} failed in {report.total_processing_time_ms}ms"
        )
        return report

    def _reset_stuck_items(self, now: datetime) -> None:
        """Fail rows whose final status write never landed so they can be retried."""
        try:
            self.db.reset_stuck_processing(now, settings.STUCK_PROCESSING_MINUTES)
        except Exception as e:
            logger.warning(f"Could not reset stuck queue items: {e}")

    def _process_concurrently(self, items: List[QueueItem]) -> List[ItemResult]:
        """Fan out over the batch and wait for every item to settle."""
        settled = {}
        workers = min(self.max_concurrency, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embedding-queue") as executor:
            futures = {executor.submit(self.process_item, item): item for item in items}
            for future in as_completed(futures):
                item = futures[future]
                try:
                    settled[item.id] = future.result()
                except Exception as e:
                    logger.error(f"Unexpected error processing queue item {item.id}: {e}", exc_info=True)
                    settled[item.id] = self._failure(item, _describe(e), 0)

        # Report in selection order; items claimed elsewhere have no result
        return [settled[item.id] for item in items if settled.get(item.id) is not None]

    def process_item(self, item: QueueItem) -> Optional[ItemResult]:
        """
        Attempt to index one queue item and record the outcome.

        Returns:
            ItemResult, or None if the item was claimed by another invocation
        """
        start = time.monotonic()

        try:
            claimed = self.db.claim_item(item.id, self.clock())
        except Exception as e:
            logger.error(f"Failed to claim queue item {item.id}: {e}")
            return self._failure(item, f"Failed to claim queue item: {_describe(e)}", _elapsed_ms(start))

        if claimed is None:
            logger.info(f"Queue item {item.id} already claimed or no longer eligible, skipping")
            return None

        outcome = self._index(claimed)
        elapsed = _elapsed_ms(start)

        if outcome.success:
            try:
                self.db.mark_completed(claimed.id, self.clock())
            except Exception as e:
                logger.error(f"Indexed {claimed.object_type}:{claimed.object_id} but could not mark it completed: {e}")
                return self._failure(claimed, f"Failed to record completion: {_describe(e)}", elapsed)

            self._write_audit_log(claimed, outcome, elapsed)
            logger.info(f"Indexed {claimed.object_type}:{claimed.object_id} in {elapsed}ms")
            return ItemResult(
                id=claimed.id,
                object_id=claimed.object_id,
                object_type=claimed.object_type,
                success=True,
                processing_time_ms=elapsed,
            )

        logger.warning(
            f"Failed to index {claimed.object_type}:{claimed.object_id} "
            f"(attempt {claimed.attempts}/{settings.MAX_RETRIES}): {outcome.message}"
        )
        try:
            self.db.mark_failed(claimed.id, outcome.message)
        except Exception as e:
            logger.error(f"Could not mark queue item {claimed.id} failed: {e}")

        self._write_audit_log(claimed, outcome, elapsed)

        if is_dead(claimed):
            logger.warning(f"Queue item {claimed.id} exhausted its retries and will not be selected again")
        return self._failure(claimed, outcome.message, elapsed)

    def _index(self, item: QueueItem) -> IndexingOutcome:
        try:
            return self.client.index_entity(item.object_type, item.object_id)
        except Exception as e:
            return IndexingOutcome(False, _describe(e))

    def _failure(self, item: QueueItem, error: str, elapsed: int) -> ItemResult:
        return ItemResult(
            id=item.id,
            object_id=item.object_id,
            object_type=item.object_type,
            success=False,
            processing_time_ms=elapsed,
            error=error,
            attempts=item.attempts,
            next_attempt_at=None if is_dead(item) else next_eligible_at(item),
        )

    def _write_audit_log(self, item: QueueItem, outcome: IndexingOutcome, elapsed: int) -> None:
        """Record the attempt in embedding_logs; failures here never affect the item."""
        entry = AuditLogEntry(
            object_type=item.object_type,
            object_id=item.object_id,
            success=outcome.success,
            processing_time_ms=elapsed,
            provider=outcome.provider,
            error_message=None if outcome.success else outcome.message,
        )
        try:
            self.db.insert_audit_log(entry)
        except Exception as e:
            logger.warning(f"Failed to write embedding log for {item.object_type}:{item.object_id}: {e}")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _describe(error: Exception) -> str:
    return str(error) or error.__class__.__name__
