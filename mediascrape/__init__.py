"""Job-queue consumer that scrapes pages for media references."""

from .extraction import MediaExtractor, MediaKind, MediaReference, parse_media
from .jobs import BackoffPolicy, Job, JobQueue, SqlJobQueue
from .persistence import MediaStore, PeriodicFlusher, PersistenceBuffer
from .shutdown import ShutdownCoordinator, ShutdownState
from .worker import JobOutcome, JobStatus, ScrapeWorker

__all__ = [
    "BackoffPolicy",
    "Job",
    "JobOutcome",
    "JobQueue",
    "JobStatus",
    "MediaExtractor",
    "MediaKind",
    "MediaReference",
    "MediaStore",
    "PeriodicFlusher",
    "PersistenceBuffer",
    "ScrapeWorker",
    "ShutdownCoordinator",
    "ShutdownState",
    "SqlJobQueue",
    "parse_media",
]
