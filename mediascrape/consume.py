"""Command-line entrypoint that runs the scrape job consumer until signalled."""

from __future__ import annotations

import argparse
import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Sequence

from models import Base

from .config import ScraperConfig, load_config_from_env
from .extraction import MediaExtractor
from .jobs import JobQueueError, SqlJobQueue
from .persistence import MediaStore, PeriodicFlusher, PersistenceBuffer
from .shutdown import ShutdownCoordinator, ShutdownState
from .worker import ScrapeWorker

LOGGER = logging.getLogger(__name__)
_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=_LOG_FORMAT)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Consume scrape jobs and store the media they reference")
    parser.add_argument("--db-url", type=str, help="SQLAlchemy database URL for media rows")
    parser.add_argument(
        "--queue-db-url",
        type=str,
        help="SQLAlchemy database URL for the job queue (defaults to --db-url)",
    )
    parser.add_argument("--concurrency", type=int, help="Maximum number of jobs in flight")
    parser.add_argument("--batch-size", type=int, help="Buffered media records that trigger a flush")
    parser.add_argument("--flush-interval", type=float, help="Seconds between periodic buffer flushes")
    parser.add_argument("--request-timeout", type=float, help="HTTP timeout in seconds for page fetches")
    parser.add_argument("--poll-interval", type=float, help="Seconds to wait when the queue is empty")
    parser.add_argument("--drain-timeout", type=float, help="Seconds to wait for in-flight jobs on shutdown")
    parser.add_argument(
        "--stall-timeout",
        type=float,
        help="Requeue jobs left in progress for longer than this many seconds at startup",
    )
    parser.add_argument("--user-agent", type=str, help="User-Agent header sent with every fetch")
    parser.add_argument("--log-level", type=str, help="Logging level (default: INFO)")
    return parser


def build_config(args: argparse.Namespace, base: ScraperConfig | None = None) -> ScraperConfig:
    """Overlay command-line values on top of the environment configuration."""

    config = base or load_config_from_env()
    if args.db_url:
        config.db_url = args.db_url
    if args.queue_db_url:
        config.queue_db_url = args.queue_db_url
    if args.user_agent:
        config.user_agent = args.user_agent
    if args.log_level:
        config.log_level = args.log_level.upper()
    if args.request_timeout is not None:
        if args.request_timeout <= 0:
            raise ValueError("--request-timeout must be positive")
        config.timeout.request_timeout = args.request_timeout
    if args.concurrency is not None:
        if args.concurrency < 1:
            raise ValueError("--concurrency must be at least 1")
        config.worker.concurrency = args.concurrency
    if args.batch_size is not None:
        if args.batch_size < 1:
            raise ValueError("--batch-size must be at least 1")
        config.buffer.batch_size = args.batch_size
    if args.flush_interval is not None:
        if args.flush_interval <= 0:
            raise ValueError("--flush-interval must be positive")
        config.buffer.flush_interval = args.flush_interval
    if args.poll_interval is not None:
        config.worker.poll_interval = max(0.0, args.poll_interval)
    if args.drain_timeout is not None:
        config.worker.drain_timeout = max(0.0, args.drain_timeout)
    if args.stall_timeout is not None:
        config.worker.stall_timeout = max(0.0, args.stall_timeout)
    return config


@dataclass
class WorkerRuntime:
    """Everything the consumer process owns while it is running."""

    config: ScraperConfig
    queue: SqlJobQueue
    store: MediaStore
    extractor: MediaExtractor
    buffer: PersistenceBuffer
    flusher: PeriodicFlusher
    worker: ScrapeWorker
    coordinator: ShutdownCoordinator
    worker_thread: threading.Thread | None = field(default=None)

    @classmethod
    def build(cls, config: ScraperConfig) -> "WorkerRuntime":
        if not config.db_url:
            raise ValueError("A database URL is required")

        store = MediaStore.from_url(config.db_url, engine_config=config.engine)
        queue = SqlJobQueue.from_url(
            config.resolved_queue_db_url,
            engine_config=config.engine,
            retry=config.retry,
        )
        Base.metadata.create_all(store.engine)
        if queue.engine.url != store.engine.url:
            Base.metadata.create_all(queue.engine)

        extractor = MediaExtractor(config)
        buffer = PersistenceBuffer(store, capacity=config.buffer.batch_size)
        flusher = PeriodicFlusher(buffer, config.buffer.flush_interval)
        worker = ScrapeWorker(
            queue,
            extractor,
            buffer,
            concurrency=config.worker.concurrency,
            poll_interval=config.worker.poll_interval,
        )
        coordinator = ShutdownCoordinator(
            worker=worker,
            flusher=flusher,
            buffer=buffer,
            queue=queue,
            store=store,
            drain_timeout=config.worker.drain_timeout,
        )
        return cls(
            config=config,
            queue=queue,
            store=store,
            extractor=extractor,
            buffer=buffer,
            flusher=flusher,
            worker=worker,
            coordinator=coordinator,
        )

    def start(self) -> None:
        stall_timeout = self.config.worker.stall_timeout
        if stall_timeout > 0:
            try:
                self.queue.requeue_stalled(timedelta(seconds=stall_timeout))
            except JobQueueError as exc:
                LOGGER.warning("Could not requeue stalled jobs: %s", exc)

        self.flusher.start()
        self.worker_thread = threading.Thread(target=self.worker.run, name="scrape-worker", daemon=True)
        self.worker_thread.start()
        LOGGER.info(
            "Worker started (concurrency=%d, batch=%d, flush every %.1fs)",
            self.worker.concurrency,
            self.buffer.capacity,
            self.config.buffer.flush_interval,
        )

    def wait(self, poll: float = 1.0) -> None:
        """Block until a shutdown is requested or the worker thread dies."""
        while not self.coordinator.wait_for_request(poll):
            if self.worker_thread is not None and not self.worker_thread.is_alive():
                LOGGER.error("Worker thread exited unexpectedly")
                self.coordinator.request_shutdown("worker exited")
                break

    def stop(self) -> ShutdownState:
        try:
            return self.coordinator.shutdown()
        finally:
            self.extractor.close()
            if self.worker_thread is not None:
                self.worker_thread.join(timeout=self.config.worker.drain_timeout)
                if self.worker_thread.is_alive():
                    LOGGER.warning(
                        "Worker still has %d jobs running; they stay in progress until stall recovery",
                        self.worker.in_flight(),
                    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    configure_logging(config.log_level)

    if not config.db_url:
        parser.error("--db-url (or MEDIA_SCRAPER_DATABASE_URL) is required")

    runtime = WorkerRuntime.build(config)
    runtime.coordinator.install_signal_handlers()
    runtime.start()
    try:
        runtime.wait()
    finally:
        state = runtime.stop()

    LOGGER.info("Consumer exited in state %s (%s)", state.value, runtime.coordinator.reason)
    return 0


__all__ = ["WorkerRuntime", "build_arg_parser", "build_config", "configure_logging", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
