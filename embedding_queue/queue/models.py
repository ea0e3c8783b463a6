"""Queue data models."""
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional


class ObjectType(str, Enum):
    """Entity kinds that can be indexed."""

    OFFER = "jetshare_offer"
    FLIGHT = "flight"
    USER = "user"
    CREW = "crew"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueueItem:
    """Represents a row of the embedding_queue table."""

    id: str
    object_id: str
    object_type: str
    status: str = QueueStatus.PENDING.value
    attempts: int = 0
    priority: int = 0
    created_at: Optional[datetime] = None
    last_attempted_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueueItem":
        """Build a QueueItem from a RealDictCursor row."""
        return cls(
            id=str(row["id"]),
            object_id=str(row["object_id"]),
            object_type=row["object_type"],
            status=row.get("status") or QueueStatus.PENDING.value,
            attempts=row.get("attempts") or 0,
            priority=row.get("priority") or 0,
            created_at=row.get("created_at"),
            last_attempted_at=row.get("last_attempted_at"),
            processed_at=row.get("processed_at"),
            error_message=row.get("error_message"),
        )


@dataclass
class AuditLogEntry:
    """One processing attempt, written to embedding_logs."""

    object_type: str
    object_id: str
    success: bool
    processing_time_ms: int
    provider: str = "unknown"
    error_message: Optional[str] = None
    endpoint: str = "queue-processor"


@dataclass
class ItemResult:
    """Outcome of processing one queue item."""

    id: str
    object_id: str
    object_type: str
    success: bool
    processing_time_ms: int
    error: Optional[str] = None
    attempts: Optional[int] = None
    next_attempt_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "object_id": self.object_id,
            "object_type": self.object_type,
            "success": self.success,
            "processing_time_ms": self.processing_time_ms,
        }
        if not self.success:
            data["error"] = self.error
            data["attempts"] = self.attempts
            data["next_attempt_at"] = (
                self.next_attempt_at.isoformat() if self.next_attempt_at else None
            )
        return data


@dataclass
class BatchReport:
    """Aggregate report for one processing pass."""

    source: str
    results: List[ItemResult] = field(default_factory=list)
    total_processing_time_ms: int = 0

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return len(self.results) - self.success_count

    @property
    def success_rate(self) -> float:
        if not self.results:
            return 0.0
        return self.success_count / len(self.results)

    @property
    def average_item_processing_time_ms(self) -> float:
        if not self.results:
            return 0.0
        return sum(r.processing_time_ms for r in self.results) / len(self.results)

    @property
    def is_empty(self) -> bool:
        return not self.results

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the trigger endpoint's JSON shape."""
        if self.is_empty:
            return {"message": "No items in the embedding queue", "items_processed": 0}
        return {
            "message": f"Processed {len(self.results)} queue items",
            "source": self.source,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "total_processing_time_ms": self.total_processing_time_ms,
            "average_item_processing_time_ms": self.average_item_processing_time_ms,
            "results": [r.to_dict() for r in self.results],
        }


def audit_row(entry: AuditLogEntry) -> Dict[str, Any]:
    """Column mapping for an embedding_logs insert."""
    row = asdict(entry)
    row["input_type"] = entry.object_type
    return row
