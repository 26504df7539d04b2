"""Concurrency-bounded consumer that turns queued jobs into buffered media."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum

from .extraction import FetchError, MediaExtractor, ParseError
from .jobs import Job, JobQueue, JobQueueError
from .persistence import PersistenceBuffer, PersistenceError

LOGGER = logging.getLogger(__name__)


class JobStatus(str, Enum):
    COMPLETED = "completed"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(slots=True, frozen=True)
class JobOutcome:
    job: Job
    status: JobStatus
    found: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.COMPLETED

    @property
    def summary(self) -> dict[str, int]:
        return {"found": self.found}

    @classmethod
    def failure(cls, job: Job, error: str) -> "JobOutcome":
        status = JobStatus.TERMINAL if job.attempts_exhausted else JobStatus.RETRYABLE
        return cls(job=job, status=status, error=error)


@dataclass(slots=True)
class WorkerStats:
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    media_found: int = 0


def execute_job(job: Job, extractor: MediaExtractor, buffer: PersistenceBuffer) -> JobOutcome:
    """Run one job and stage its media. Extraction errors become a failed outcome."""

    LOGGER.info("Scraping %s (job %s, attempt %d/%d)", job.url, job.id, job.attempts, job.max_attempts)
    try:
        references = extractor.extract(job.url)
    except (FetchError, ParseError) as exc:
        LOGGER.warning("Error scraping %s: %s", job.url, exc)
        return JobOutcome.failure(job, str(exc))
    except Exception as exc:
        LOGGER.exception("Unhandled error scraping %s", job.url)
        return JobOutcome.failure(job, f"{type(exc).__name__}: {exc}")

    try:
        for reference in references:
            if buffer.append(reference.tagged(job.url)):
                buffer.flush()
    except PersistenceError as exc:
        LOGGER.error("Could not stage media from %s: %s", job.url, exc)
        return JobOutcome.failure(job, str(exc))

    LOGGER.info("Found %d media items from %s", len(references), job.url)
    return JobOutcome(job=job, status=JobStatus.COMPLETED, found=len(references))


class ScrapeWorker:
    """Pull loop that keeps at most ``concurrency`` jobs in flight.

    The loop thread owns the queue handle: it claims jobs, hands them to a
    thread pool and reports every outcome once the job finishes. ``stop``
    ends intake; jobs already running finish and are reported before
    :meth:`run` returns.
    """

    def __init__(
        self,
        queue: JobQueue,
        extractor: MediaExtractor,
        buffer: PersistenceBuffer,
        *,
        concurrency: int = 4,
        poll_interval: float = 1.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._extractor = extractor
        self._buffer = buffer
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._finished = threading.Event()
        self._in_flight: dict[Future[JobOutcome], Job] = {}
        self.stats = WorkerStats()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def in_flight(self) -> int:
        return len(self._in_flight)

    def stop(self) -> None:
        self._stop.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._finished.wait(timeout)

    def run(self) -> WorkerStats:
        self._finished.clear()
        try:
            with ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="scrape") as executor:
                while not self._stop.is_set():
                    if len(self._in_flight) >= self._concurrency:
                        self._drain_completed(timeout=None)
                        continue

                    job = self._claim()
                    if job is None:
                        if self._in_flight:
                            self._drain_completed(timeout=self._poll_interval)
                        else:
                            self._stop.wait(self._poll_interval)
                        continue

                    self.stats.claimed += 1
                    future = executor.submit(execute_job, job, self._extractor, self._buffer)
                    self._in_flight[future] = job

                self._drain_completed(timeout=None, until_empty=True)
        finally:
            self._finished.set()
        LOGGER.info(
            "Worker stopped: %d claimed, %d completed, %d failed, %d media found",
            self.stats.claimed,
            self.stats.completed,
            self.stats.failed,
            self.stats.media_found,
        )
        return self.stats

    def _claim(self) -> Job | None:
        try:
            return self._queue.claim_next()
        except JobQueueError as exc:
            LOGGER.error("Claiming next job failed: %s", exc)
            self._stop.wait(self._poll_interval)
            return None

    def _drain_completed(self, *, timeout: float | None, until_empty: bool = False) -> None:
        while self._in_flight:
            done, _ = wait(tuple(self._in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
            for finished in done:
                job = self._in_flight.pop(finished)
                try:
                    outcome = finished.result()
                except Exception as exc:
                    LOGGER.exception("Worker thread raised unexpectedly for %s", job.url)
                    outcome = JobOutcome.failure(job, str(exc))
                self._report(outcome)
            if not until_empty:
                return

    def _report(self, outcome: JobOutcome) -> None:
        job = outcome.job
        try:
            if outcome.succeeded:
                self._queue.report_completed(job.id, outcome.summary)
            else:
                self._queue.report_failed(job.id, outcome.error or "unknown error")
        except JobQueueError as exc:
            # The job stays in_progress and is picked up again by stall recovery.
            LOGGER.error("Could not report outcome of job %s: %s", job.id, exc)
            return

        if outcome.succeeded:
            self.stats.completed += 1
            self.stats.media_found += outcome.found
            LOGGER.info("Job %s completed", job.id)
        else:
            self.stats.failed += 1
            log = LOGGER.error if outcome.status is JobStatus.TERMINAL else LOGGER.warning
            log("Job %s failed (%s): %s", job.id, outcome.status.value, outcome.error)


__all__ = ["JobOutcome", "JobStatus", "ScrapeWorker", "WorkerStats", "execute_job"]
