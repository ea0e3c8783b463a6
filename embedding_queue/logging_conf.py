"""Logging for the queue worker and API: console, rotating file, Better Stack."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from logtail import LogtailHandler

from embedding_queue import settings

LOGGER_NAME = "embedding_queue"

# Items of one pass run on "embedding-queue_N" threads; the thread name
# ties interleaved claim/index/record lines back to one item.
LOG_FORMAT = "%(asctime)s [%(threadName)s] %(levelname)s %(name)s: %(message)s"

# Third-party loggers that are noisy at INFO during a pass
QUIET_LOGGERS = ("urllib3", "psycopg2", "httpx")


def _file_handler(formatter: logging.Formatter) -> RotatingFileHandler:
    log_file = Path(settings.LOG_FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file,
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def _betterstack_handler(formatter: logging.Formatter):
    """Better Stack handler, or None when no source token is configured."""
    if not settings.BETTERSTACK_SOURCE_TOKEN:
        return None
    kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
    if settings.BETTERSTACK_INGEST_HOST:
        kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
    handler = LogtailHandler(**kwargs)
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> logging.Logger:
    """Configure the ``embedding_queue`` logger from settings and return it.

    Safe to call again (tests do): existing handlers are closed and replaced.
    """
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    queue_logger = logging.getLogger(LOGGER_NAME)
    for handler in list(queue_logger.handlers):
        queue_logger.removeHandler(handler)
        handler.close()
    queue_logger.setLevel(level)
    queue_logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    queue_logger.addHandler(console_handler)
    queue_logger.addHandler(_file_handler(formatter))

    try:
        betterstack_handler = _betterstack_handler(formatter)
    except Exception as e:
        queue_logger.warning(f"Failed to initialize BetterStack logging: {e}")
        betterstack_handler = None
    if betterstack_handler is not None:
        queue_logger.addHandler(betterstack_handler)
        host_info = settings.BETTERSTACK_INGEST_HOST or "default (in.logs.betterstack.com)"
        queue_logger.info(f"BetterStack logging enabled (host: {host_info})")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    # One line per trigger request is noise next to the pass summary
    logging.getLogger("uvicorn.access").setLevel(
        logging.INFO if settings.LOG_HTTP_ACCESS else logging.WARNING
    )
    return queue_logger


logger = setup_logging()
