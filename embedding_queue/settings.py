"""Configuration for the JetStream embedding queue processor."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", str(LOGS_DIR / "embedding_queue.log"))
LOG_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024)))
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))
LOG_HTTP_ACCESS = os.getenv("LOG_HTTP_ACCESS", "false").lower() == "true"
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Database connection
DATABASE_URL = os.getenv("DATABASE_URL")
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "10"))

# Downstream indexing endpoint (single entity: POST {type, id})
INDEXING_ENDPOINT_URL = os.getenv("INDEXING_ENDPOINT_URL")
INDEXING_API_KEY = os.getenv("INDEXING_API_KEY")
INDEXING_TIMEOUT = float(os.getenv("INDEXING_TIMEOUT", "30"))  # seconds per call

# Queue processing
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "10"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "5"))
BACKOFF_BASE_SECONDS = int(os.getenv("BACKOFF_BASE_SECONDS", "300"))  # 5 minutes
BACKOFF_MAX_SECONDS = int(os.getenv("BACKOFF_MAX_SECONDS", "86400"))  # 24 hours
MAX_CONCURRENCY = int(os.getenv("MAX_CONCURRENCY", "10"))

# Scheduler
POLL_INTERVAL = int(os.getenv("POLL_INTERVAL", "60"))  # seconds between passes
STUCK_PROCESSING_MINUTES = int(os.getenv("STUCK_PROCESSING_MINUTES", "30"))

# HTTP API
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))


def validate_config():
    """Validate required configuration."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")

    if not INDEXING_ENDPOINT_URL:
        errors.append("INDEXING_ENDPOINT_URL is required")
    elif not INDEXING_ENDPOINT_URL.startswith(("http://", "https://")):
        errors.append(f"INDEXING_ENDPOINT_URL must be an http(s) URL: {INDEXING_ENDPOINT_URL}")

    if INDEXING_TIMEOUT <= 0:
        errors.append("INDEXING_TIMEOUT must be positive")

    if BATCH_SIZE < 1:
        errors.append("BATCH_SIZE must be at least 1")

    if MAX_RETRIES < 1:
        errors.append("MAX_RETRIES must be at least 1")

    if BACKOFF_BASE_SECONDS <= 0 or BACKOFF_MAX_SECONDS < BACKOFF_BASE_SECONDS:
        errors.append("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS > 0")

    if MAX_CONCURRENCY < 1:
        errors.append("MAX_CONCURRENCY must be at least 1")

    if DB_POOL_MIN < 1 or DB_POOL_MAX < DB_POOL_MIN:
        errors.append("DB_POOL_MAX must be >= DB_POOL_MIN >= 1")
    elif DB_POOL_MAX < MAX_CONCURRENCY:
        errors.append(
            f"DB_POOL_MAX ({DB_POOL_MAX}) must be >= MAX_CONCURRENCY ({MAX_CONCURRENCY}) "
            "so every worker thread can hold a connection"
        )

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
