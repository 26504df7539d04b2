"""Durable scrape job queue: the contract the worker consumes and a SQL backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Protocol
from uuid import UUID

from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_IN_PROGRESS,
    JOB_PENDING,
    ScrapeJob,
    generate_uuid7,
)

from .config import EngineConfig, RetryConfig

LOGGER = logging.getLogger(__name__)

BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_FIXED = "fixed"
_BACKOFF_TYPES = {BACKOFF_EXPONENTIAL, BACKOFF_FIXED}
_PRUNE_EVERY = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobQueueError(RuntimeError):
    """Raised when the job queue backend cannot be read or updated."""


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    kind: str = BACKOFF_EXPONENTIAL
    delay: float = 1.0

    def __post_init__(self) -> None:
        if self.kind not in _BACKOFF_TYPES:
            raise ValueError(f"Unknown backoff type '{self.kind}'")
        if self.delay < 0:
            raise ValueError("Backoff delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retrying after failed attempt number ``attempt``."""
        if self.kind == BACKOFF_FIXED:
            return self.delay
        return self.delay * (2 ** max(0, attempt - 1))

    @classmethod
    def from_config(cls, retry: RetryConfig) -> "BackoffPolicy":
        return cls(kind=retry.backoff_type, delay=retry.base_delay)


@dataclass(slots=True, frozen=True)
class Job:
    id: str
    url: str
    attempts: int
    max_attempts: int
    backoff: BackoffPolicy

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class JobQueue(Protocol):
    """What the worker needs from a durable queue."""

    def claim_next(self) -> Job | None:
        ...

    def report_completed(self, job_id: str, summary: Mapping[str, Any]) -> None:
        ...

    def report_failed(self, job_id: str, error: str) -> None:
        ...

    def close(self) -> None:
        ...


def _to_job(record: ScrapeJob) -> Job:
    return Job(
        id=str(record.id),
        url=record.url,
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        backoff=BackoffPolicy(kind=record.backoff_type, delay=record.backoff_delay),
    )


class SqlJobQueue:
    """Job queue stored in the ``scrape_jobs`` table.

    Claiming marks a row ``in_progress`` and counts the attempt. Failures are
    rescheduled with the job's backoff policy until ``max_attempts`` is used
    up, after which the job is ``failed`` for good. Rows left ``in_progress``
    by a crashed worker are handed out again by :meth:`requeue_stalled`, so
    every job runs at least once.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        retry: RetryConfig | None = None,
        keep_completed: int = 100,
        keep_failed: int = 50,
    ) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine)
        self._retry = retry or RetryConfig()
        self._keep_completed = keep_completed
        self._keep_failed = keep_failed
        self._finished_since_prune = 0
        self._closed = False

    @classmethod
    def from_url(
        cls,
        db_url: str,
        *,
        engine_config: EngineConfig | None = None,
        retry: RetryConfig | None = None,
    ) -> "SqlJobQueue":
        engine_config = engine_config or EngineConfig()
        engine = create_engine(db_url, **engine_config.engine_options(db_url))
        return cls(engine, retry=retry)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise JobQueueError("Job queue is closed")

    def enqueue(
        self,
        urls: Iterable[str],
        *,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> list[str]:
        """Create one pending job per URL and return the new job ids."""

        self._ensure_open()
        policy = backoff or BackoffPolicy.from_config(self._retry)
        attempts = max_attempts if max_attempts is not None else self._retry.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        now = _utcnow()
        records = [
            ScrapeJob(
                id=generate_uuid7(),
                url=url,
                status=JOB_PENDING,
                attempts=0,
                max_attempts=attempts,
                backoff_type=policy.kind,
                backoff_delay=policy.delay,
                next_attempt_at=now,
            )
            for url in urls
        ]
        if not records:
            return []

        job_ids = [str(record.id) for record in records]
        try:
            with self._session_factory() as session:
                session.add_all(records)
                session.commit()
        except SQLAlchemyError as exc:
            raise JobQueueError(str(exc)) from exc
        LOGGER.info("Queued %d scrape jobs", len(job_ids))
        return job_ids

    def claim_next(self) -> Job | None:
        self._ensure_open()
        now = _utcnow()
        stmt = (
            select(ScrapeJob)
            .where(ScrapeJob.status == JOB_PENDING, ScrapeJob.next_attempt_at <= now)
            .order_by(ScrapeJob.next_attempt_at, ScrapeJob.created_at, ScrapeJob.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        try:
            with self._session_factory() as session:
                record = session.execute(stmt).scalar_one_or_none()
                if record is None:
                    return None
                record.status = JOB_IN_PROGRESS
                record.attempts += 1
                record.claimed_at = now
                job = _to_job(record)
                session.commit()
        except SQLAlchemyError as exc:
            raise JobQueueError(str(exc)) from exc
        LOGGER.debug("Claimed job %s (attempt %d/%d)", job.id, job.attempts, job.max_attempts)
        return job

    def report_completed(self, job_id: str, summary: Mapping[str, Any]) -> None:
        self._ensure_open()
        try:
            with self._session_factory() as session:
                record = session.get(ScrapeJob, UUID(job_id))
                if record is None:
                    LOGGER.warning("Completion reported for unknown job %s", job_id)
                    return
                record.status = JOB_COMPLETED
                record.result = dict(summary)
                record.last_error = None
                record.finished_at = _utcnow()
                session.commit()
        except SQLAlchemyError as exc:
            raise JobQueueError(str(exc)) from exc
        self._after_finish()

    def report_failed(self, job_id: str, error: str) -> None:
        self._ensure_open()
        now = _utcnow()
        terminal = False
        try:
            with self._session_factory() as session:
                record = session.get(ScrapeJob, UUID(job_id))
                if record is None:
                    LOGGER.warning("Failure reported for unknown job %s", job_id)
                    return
                record.last_error = error
                if record.attempts >= record.max_attempts:
                    record.status = JOB_FAILED
                    record.finished_at = now
                    terminal = True
                else:
                    policy = BackoffPolicy(kind=record.backoff_type, delay=record.backoff_delay)
                    delay = policy.delay_for(record.attempts)
                    record.status = JOB_PENDING
                    record.next_attempt_at = now + timedelta(seconds=delay)
                    LOGGER.info(
                        "Job %s scheduled for retry in %.1fs (attempt %d/%d)",
                        job_id,
                        delay,
                        record.attempts,
                        record.max_attempts,
                    )
                url = record.url
                session.commit()
        except SQLAlchemyError as exc:
            raise JobQueueError(str(exc)) from exc

        if terminal:
            LOGGER.error("Job %s for %s failed permanently: %s", job_id, url, error)
            self._after_finish()

    def requeue_stalled(self, older_than: timedelta) -> int:
        """Return jobs claimed before ``now - older_than`` to the pending state."""

        now = _utcnow()
        stmt = (
            update(ScrapeJob)
            .where(
                ScrapeJob.status == JOB_IN_PROGRESS,
                ScrapeJob.claimed_at < now - older_than,
            )
            .values(status=JOB_PENDING, next_attempt_at=now)
        )
        try:
            with self._session_factory() as session:
                result = session.execute(stmt)
                session.commit()
        except SQLAlchemyError as exc:
            raise JobQueueError(str(exc)) from exc
        count = result.rowcount or 0
        if count:
            LOGGER.warning("Requeued %d stalled jobs", count)
        return count

    def requeue_failed(
        self,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
        dry_run: bool = False,
    ) -> list[Job]:
        """Give permanently failed jobs a fresh attempt budget.

        ``since``/``until`` filter on the time the job failed and must be naive
        UTC datetimes. With ``dry_run`` the matching jobs are returned untouched.
        """

        stmt = select(ScrapeJob).where(ScrapeJob.status == JOB_FAILED)
        if since is not None:
            stmt = stmt.where(ScrapeJob.finished_at >= since)
        if until is not None:
            stmt = stmt.where(ScrapeJob.finished_at <= until)
        stmt = stmt.order_by(ScrapeJob.finished_at.asc())
        if limit:
            stmt = stmt.limit(limit)

        now = _utcnow()
        try:
            with self._session_factory() as session:
                records = list(session.execute(stmt).scalars())
                jobs = [_to_job(record) for record in records]
                if dry_run or not records:
                    return jobs
                for record in records:
                    record.status = JOB_PENDING
                    record.attempts = 0
                    record.next_attempt_at = now
                    record.finished_at = None
                    record.claimed_at = None
                session.commit()
        except SQLAlchemyError as exc:
            raise JobQueueError(str(exc)) from exc
        LOGGER.info("Requeued %d failed jobs", len(jobs))
        return jobs

    def prune_finished(self, keep_completed: int | None = None, keep_failed: int | None = None) -> int:
        """Delete all but the most recent finished jobs of each terminal state."""

        retention = {
            JOB_COMPLETED: self._keep_completed if keep_completed is None else keep_completed,
            JOB_FAILED: self._keep_failed if keep_failed is None else keep_failed,
        }
        removed = 0
        try:
            with self._session_factory() as session:
                for status, keep in retention.items():
                    stale_ids = list(
                        session.execute(
                            select(ScrapeJob.id)
                            .where(ScrapeJob.status == status)
                            .order_by(ScrapeJob.finished_at.desc(), ScrapeJob.id.desc())
                            .offset(max(0, keep))
                        ).scalars()
                    )
                    if not stale_ids:
                        continue
                    session.execute(delete(ScrapeJob).where(ScrapeJob.id.in_(stale_ids)))
                    removed += len(stale_ids)
                session.commit()
        except SQLAlchemyError as exc:
            raise JobQueueError(str(exc)) from exc
        if removed:
            LOGGER.debug("Pruned %d finished jobs", removed)
        return removed

    def _after_finish(self) -> None:
        self._finished_since_prune += 1
        if self._finished_since_prune < _PRUNE_EVERY:
            return
        self._finished_since_prune = 0
        try:
            self.prune_finished()
        except JobQueueError as exc:
            LOGGER.warning("Pruning finished jobs failed: %s", exc)

    def close(self) -> None:
        """Dispose the engine. Later claims and reports raise :class:`JobQueueError`."""
        self._closed = True
        self._engine.dispose()


__all__ = [
    "BACKOFF_EXPONENTIAL",
    "BACKOFF_FIXED",
    "BackoffPolicy",
    "Job",
    "JobQueue",
    "JobQueueError",
    "SqlJobQueue",
]
