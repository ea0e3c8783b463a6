"""Scheduler - runs embedding queue passes on a fixed interval."""
import argparse
import signal
import sys
import time

from embedding_queue.logging_conf import logger
from embedding_queue import settings
from embedding_queue.db import Database, QueueStoreError
from embedding_queue.processor import QueueProcessor


class Application:
    """Polls the embedding queue and processes eligible items."""

    def __init__(self, batch_size: int = None, interval: int = None, processor: QueueProcessor = None):
        self.batch_size = settings.BATCH_SIZE if batch_size is None else batch_size
        self.interval = settings.POLL_INTERVAL if interval is None else interval
        if self.batch_size < 1 or self.interval < 1:
            raise ValueError(f"batch size and interval must be positive (got {self.batch_size}, {self.interval})")
        self.processor = processor or QueueProcessor(db=Database())
        self.db = self.processor.db
        self.running = False

    def start(self):
        """Start the application."""
        logger.info("=" * 50)
        logger.info("JetStream Embedding Queue Processor")
        logger.info("=" * 50)
        logger.info(f"Indexing endpoint: {settings.INDEXING_ENDPOINT_URL}")
        logger.info(f"Batch size: {self.batch_size}, poll interval: {self.interval}s")
        logger.info(f"Max retries: {settings.MAX_RETRIES}, backoff: "
                    f"{settings.BACKOFF_BASE_SECONDS}s..{settings.BACKOFF_MAX_SECONDS}s")
        logger.info("=" * 50)

        settings.validate_config()
        self.running = True
        logger.info("Started - watching the embedding queue")

    def stop(self):
        """Stop the application."""
        if not self.running:
            return
        self.running = False
        self.db.close()
        logger.info("Stopped")

    def run_once(self) -> int:
        """Run a single pass. Returns count of items processed."""
        try:
            report = self.processor.run_batch(batch_size=self.batch_size, source="scheduler")
        except QueueStoreError as e:
            logger.error(f"Queue pass failed: {e}")
            return 0
        return len(report.results)

    def run(self):
        """Main loop."""
        self.start()

        while self.running:
            try:
                processed = self.run_once()

                # A full batch means more work is probably waiting
                if processed < self.batch_size:
                    self._sleep(self.interval)

            except KeyboardInterrupt:
                break
            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)
                self._sleep(5)

        self.stop()

    def _sleep(self, seconds: int):
        for _ in range(seconds):
            if not self.running:
                break
            time.sleep(1)


def positive_int(value: str) -> int:
    """argparse type for counts and intervals that must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Process the JetStream embedding queue")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--batch-size", type=positive_int, default=None, help="Items per pass")
    parser.add_argument("--interval", type=positive_int, default=None, help="Seconds between passes")
    return parser.parse_args(argv)


def main(argv=None):
    """Entry point."""
    args = parse_args(argv)
    try:
        app = Application(batch_size=args.batch_size, interval=args.interval)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        app.running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if args.once:
            app.start()
            app.run_once()
            app.stop()
        else:
            app.run()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
