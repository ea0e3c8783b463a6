"""Retry eligibility for queue items.

A failed item is not rescheduled by a timer. Its next eligible time is derived
on every pass from ``last_attempted_at`` and ``attempts``::

    backoff(n) = min(base * 2 ** (n - 1), max)    for n >= 1

Items that were never attempted have no cool-down. Items whose attempts reached
``MAX_RETRIES`` are dead and never eligible again.
"""
from datetime import datetime, timedelta
from typing import Optional

from embedding_queue import settings
from embedding_queue.queue.models import QueueItem, QueueStatus

SELECTABLE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.FAILED.value)


def backoff_seconds(
    attempts: int,
    base: int = None,
    maximum: int = None,
) -> int:
    """Cool-down in seconds after the given number of attempts."""
    base = settings.BACKOFF_BASE_SECONDS if base is None else base
    maximum = settings.BACKOFF_MAX_SECONDS if maximum is None else maximum
    if attempts < 1:
        return 0
    # Cap the exponent so huge attempt counts don't build enormous ints
    exponent = min(attempts - 1, 62)
    return min(base * (2 ** exponent), maximum)


def is_dead(item: QueueItem, max_retries: int = None) -> bool:
    """True once the item has used up its retry budget."""
    max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
    return item.attempts >= max_retries


def next_eligible_at(item: QueueItem) -> Optional[datetime]:
    """When the item may be attempted again; None means no cool-down applies."""
    if item.attempts < 1 or item.last_attempted_at is None:
        return None
    return item.last_attempted_at + timedelta(seconds=backoff_seconds(item.attempts))


def is_eligible(item: QueueItem, now: datetime, max_retries: int = None) -> bool:
    """Whether the selector may hand this item out at ``now``."""
    if item.status not in SELECTABLE_STATUSES:
        return False
    if is_dead(item, max_retries):
        return False
    eligible_at = next_eligible_at(item)
    return eligible_at is None or now >= eligible_at
