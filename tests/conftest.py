"""Shared fixtures: an in-memory queue store and a scripted indexing client."""
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import psycopg2
import pytest

from embedding_queue import settings
from embedding_queue.db import QueueStoreError
from embedding_queue.indexing_client import IndexingOutcome
from embedding_queue.processor import QueueProcessor
from embedding_queue.queue.backoff import is_eligible
from embedding_queue.queue.models import QueueItem

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def make_item(item_id, object_type="jetshare_offer", status="pending", attempts=0,
              priority=0, age_minutes=60, last_attempted_at=None, error_message=None):
    return QueueItem(
        id=item_id,
        object_id=f"obj-{item_id}",
        object_type=object_type,
        status=status,
        attempts=attempts,
        priority=priority,
        created_at=NOW - timedelta(minutes=age_minutes),
        last_attempted_at=last_attempted_at,
        error_message=error_message,
    )


class FakeDatabase:
    """In-memory stand-in for Database with the same eligibility rules."""

    def __init__(self, items=()):
        self.items = {item.id: item for item in items}
        self.audit_log = []
        self.writes = 0
        self.lost_claims = set()
        self.fail_select = False
        self.fail_audit = False
        self.fail_complete = False
        self.fail_reset = False
        self.closed = False
        self._lock = threading.Lock()

    def get_eligible_items(self, limit, now):
        if self.fail_select:
            raise QueueStoreError("Failed to fetch embedding queue: connection refused")
        eligible = [replace(i) for i in self.items.values() if is_eligible(i, now)]
        eligible.sort(key=lambda i: (-i.priority, i.created_at))
        return eligible[:limit]

    def claim_item(self, item_id, now):
        with self._lock:
            item = self.items[item_id]
            if item_id in self.lost_claims or not is_eligible(item, now):
                return None
            item.attempts += 1
            item.status = "processing"
            item.last_attempted_at = now
            self.writes += 1
            return replace(item)

    def mark_completed(self, item_id, now):
        if self.fail_complete:
            raise psycopg2.OperationalError("server closed the connection unexpectedly")
        with self._lock:
            item = self.items[item_id]
            item.status = "completed"
            item.processed_at = now
            item.error_message = None
            self.writes += 1

    def mark_failed(self, item_id, error):
        with self._lock:
            item = self.items[item_id]
            item.status = "failed"
            item.error_message = error
            self.writes += 1

    def reset_stuck_processing(self, now, minutes=30):
        if self.fail_reset:
            raise psycopg2.OperationalError("canceling statement due to lock timeout")
        cutoff = now - timedelta(minutes=minutes)
        count = 0
        with self._lock:
            for item in self.items.values():
                if (item.status == "processing" and item.last_attempted_at is not None
                        and item.last_attempted_at < cutoff):
                    item.status = "failed"
                    item.error_message = "Processing did not finish (stale claim reset)"
                    self.writes += 1
                    count += 1
        return count

    def insert_audit_log(self, entry):
        if self.fail_audit:
            raise psycopg2.OperationalError("relation \"embedding_logs\" does not exist")
        with self._lock:
            self.audit_log.append(entry)

    def enqueue(self, object_type, object_id, priority=0):
        with self._lock:
            for item in self.items.values():
                if (item.object_id == object_id and item.object_type == object_type
                        and item.status in ("pending", "processing")):
                    return item.id, False
            item_id = f"q-{len(self.items) + 1}"
            self.items[item_id] = QueueItem(
                id=item_id, object_id=object_id, object_type=object_type,
                priority=priority, created_at=NOW,
            )
            return item_id, True

    def get_queue_stats(self):
        by_status = {}
        for item in self.items.values():
            by_status[item.status] = by_status.get(item.status, 0) + 1
        return {
            "by_status": by_status,
            "total": len(self.items),
            "dead_count": sum(1 for i in self.items.values()
                              if i.status == "failed" and i.attempts >= settings.MAX_RETRIES),
            "oldest_pending_at": None,
        }

    def get_audit_rows(self, days=7):
        return [
            {"provider": e.provider, "object_type": e.object_type,
             "success": e.success, "processing_time_ms": e.processing_time_ms}
            for e in self.audit_log
        ]

    def close(self):
        self.closed = True


class FakeIndexingClient:
    """Succeeds unless the object ID is listed as failing or raising."""

    def __init__(self, failing=(), raising=()):
        self.failing = set(failing)
        self.raising = set(raising)
        self.calls = []

    def index_entity(self, object_type, object_id):
        self.calls.append((object_type, object_id))
        if object_id in self.raising:
            raise RuntimeError("connection reset by peer")
        if object_id in self.failing:
            return IndexingOutcome(False, "Indexing endpoint returned 500: upstream error", status_code=500)
        return IndexingOutcome(True, "indexed", status_code=200, provider="cohere")


@pytest.fixture(autouse=True)
def queue_settings(monkeypatch):
    """Pin the tunables so tests don't depend on the environment."""
    monkeypatch.setattr(settings, "BATCH_SIZE", 10)
    monkeypatch.setattr(settings, "MAX_RETRIES", 5)
    monkeypatch.setattr(settings, "BACKOFF_BASE_SECONDS", 300)
    monkeypatch.setattr(settings, "BACKOFF_MAX_SECONDS", 86400)
    monkeypatch.setattr(settings, "MAX_CONCURRENCY", 4)
    monkeypatch.setattr(settings, "STUCK_PROCESSING_MINUTES", 30)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_client():
    return FakeIndexingClient()


@pytest.fixture
def processor(fake_db, fake_client):
    return QueueProcessor(db=fake_db, client=fake_client, clock=lambda: NOW)
