"""HTTP API: trigger processing passes and manage the embedding queue."""
import sys
from collections import Counter
from functools import lru_cache
from typing import Any, Dict, List, Optional

import psycopg2
import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from embedding_queue import settings
from embedding_queue.db import Database, QueueStoreError
from embedding_queue.logging_conf import logger
from embedding_queue.processor import QueueProcessor
from embedding_queue.queue.models import ObjectType


class TriggerRequest(BaseModel):
    """Body of the queue-processor trigger; every field is optional."""

    batch_size: int = Field(default=settings.BATCH_SIZE, ge=1, le=500, alias="batchSize")
    immediate: bool = Field(default=False, description="Advisory only")
    source: str = Field(default="manual", max_length=100)

    class Config:
        populate_by_name = True
        json_schema_extra = {"example": {"batchSize": 10, "source": "cron"}}


class EnqueueRequest(BaseModel):
    type: ObjectType
    id: str = Field(..., min_length=1)
    priority: int = 5


class ReindexBatchRequest(BaseModel):
    object_type: ObjectType
    object_ids: List[str] = Field(..., min_length=1, max_length=500)
    priority: int = 2


@lru_cache()
def get_database() -> Database:
    return Database()


@lru_cache()
def get_processor() -> QueueProcessor:
    return QueueProcessor(db=get_database())


app = FastAPI(
    title="JetStream Embedding Queue",
    description="Keeps the vector search index in sync with the relational data",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "embedding-queue"}


@app.post("/api/embedding/queue-processor")
def process_queue(
    request: Optional[TriggerRequest] = None,
    processor: QueueProcessor = Depends(get_processor),
):
    """
    Run one processing pass over the embedding queue.

    Called manually or by a scheduler. Individual item failures are part of
    the report; only a failure to read the queue fails the whole request.
    """
    request = request or TriggerRequest()

    try:
        report = processor.run_batch(batch_size=request.batch_size, source=request.source)
    except QueueStoreError as e:
        logger.error(f"Error fetching embedding queue: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch embedding queue", "details": str(e), "items_processed": 0},
        )
    except Exception as e:
        logger.error(f"Error in queue processor: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Error processing embedding queue", "details": str(e), "items_processed": 0},
        )

    return report.to_dict()


@app.post("/api/embedding/enqueue")
def enqueue_entity(request: EnqueueRequest, db: Database = Depends(get_database)):
    """Queue one entity for (re)indexing."""
    try:
        queue_id, created = db.enqueue(request.type.value, request.id, request.priority)
    except psycopg2.Error as e:
        logger.error(f"Failed to enqueue {request.type.value}:{request.id}: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to add to embedding queue", "details": str(e)},
        )

    if created:
        logger.info(f"Added {request.type.value}:{request.id} to embedding queue")
    else:
        logger.info(f"{request.type.value}:{request.id} already in embedding queue")
    return {"success": True, "queued": created, "queue_id": queue_id}


@app.post("/api/embedding/reindex-batch")
def reindex_batch(
    request: ReindexBatchRequest,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_database),
    processor: QueueProcessor = Depends(get_processor),
):
    """Queue many entities of one type, skipping those already waiting.

    When anything new was queued, a processing pass is started after the
    response is sent so the batch does not wait for the next scheduled pass.
    """
    object_type = request.object_type.value
    results = []

    for object_id in request.object_ids:
        try:
            queue_id, created = db.enqueue(object_type, object_id, request.priority)
        except psycopg2.Error as e:
            logger.error(f"Error queueing {object_type} {object_id} for embedding: {e}")
            results.append({"id": object_id, "success": False, "error": str(e)})
            continue

        if created:
            results.append({"id": object_id, "success": True, "queue_id": queue_id})
        else:
            results.append({"id": object_id, "success": True, "already_queued": True, "queue_id": queue_id})

    queued = sum(1 for r in results if r["success"] and not r.get("already_queued"))
    already = sum(1 for r in results if r.get("already_queued"))
    failed = sum(1 for r in results if not r["success"])
    logger.info(f"Reindex batch for {object_type}: {queued} queued, {already} already queued, {failed} failed")
    if queued:
        background_tasks.add_task(run_pass_in_background, processor, "reindex-batch")

    return {
        "message": f"Queued {queued} {object_type} items for embedding",
        "queued_count": queued,
        "already_queued_count": already,
        "failed_count": failed,
        "results": results,
    }


def run_pass_in_background(processor: QueueProcessor, source: str) -> None:
    """Run one pass outside a request; errors are logged, there is no caller to report to."""
    try:
        processor.run_batch(source=source)
    except Exception as e:
        logger.error(f"Background pass (source: {source}) failed: {e}", exc_info=True)


@app.get("/api/embedding/queue-stats")
def queue_stats(db: Database = Depends(get_database)):
    try:
        return db.get_queue_stats()
    except psycopg2.Error as e:
        logger.error(f"Error fetching queue stats: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch queue statistics", "details": str(e)},
        )


@app.get("/api/embedding/logging")
def embedding_log_stats(days: int = Query(default=7, ge=1, le=365), db: Database = Depends(get_database)):
    """Statistics over the embedding_logs audit trail."""
    try:
        rows = db.get_audit_rows(days)
    except psycopg2.Error as e:
        logger.error(f"Error fetching embedding logs: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch embedding statistics", "details": str(e)},
        )
    return summarize_audit_rows(rows, days)


def summarize_audit_rows(rows: List[Dict[str, Any]], days: int) -> Dict[str, Any]:
    total = len(rows)
    successes = sum(1 for r in rows if r["success"])
    timings = [r["processing_time_ms"] for r in rows if r.get("processing_time_ms") is not None]

    return {
        "days": days,
        "total_requests": total,
        "success_count": successes,
        "failure_count": total - successes,
        "success_rate": successes / total if total else 0.0,
        "average_processing_time_ms": sum(timings) / len(timings) if timings else 0.0,
        "provider_usage": dict(Counter(r.get("provider") or "unknown" for r in rows)),
        "object_type_counts": dict(Counter(r.get("object_type") or "unknown" for r in rows)),
    }


def main():
    """Entry point: serve the API with uvicorn."""
    try:
        settings.validate_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    logger.info(f"Serving embedding queue API on {settings.API_HOST}:{settings.API_PORT}")
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=settings.LOG_HTTP_ACCESS,
    )


if __name__ == "__main__":
    main()
