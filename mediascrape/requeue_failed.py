"""Give permanently failed scrape jobs a fresh attempt budget."""

from __future__ import annotations

import argparse
import datetime as dt
import logging
from typing import Sequence

from .config import load_config_from_env
from .jobs import JobQueueError, SqlJobQueue

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Requeue scrape jobs that exhausted their retries. Matching jobs go back "
            "to pending with their attempt counter reset."
        )
    )
    parser.add_argument(
        "--db-url",
        help=(
            "SQLAlchemy URL of the job queue. Defaults to MEDIA_SCRAPER_QUEUE_DATABASE_URL "
            "or MEDIA_SCRAPER_DATABASE_URL."
        ),
    )
    parser.add_argument(
        "--since",
        help="Only consider jobs that failed at or after the supplied ISO-8601 datetime.",
    )
    parser.add_argument(
        "--until",
        help="Only consider jobs that failed at or before the supplied ISO-8601 datetime.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=250,
        help="Maximum number of jobs to requeue. Defaults to 250.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List candidate jobs without requeueing them.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging output.",
    )
    return parser.parse_args(argv)


def parse_datetime(value: str | None) -> dt.datetime | None:
    """Parse an ISO-8601 value into a naive UTC datetime (the column format)."""
    if not value:
        return None

    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise SystemExit(f"Invalid datetime '{value}': {exc}") from exc

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return parsed


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    since = parse_datetime(args.since)
    until = parse_datetime(args.until)

    config = load_config_from_env()
    db_url = args.db_url or config.resolved_queue_db_url
    if not db_url:
        raise SystemExit(
            "No database URL provided. Supply --db-url or configure "
            "MEDIA_SCRAPER_QUEUE_DATABASE_URL/MEDIA_SCRAPER_DATABASE_URL in the environment."
        )

    queue = SqlJobQueue.from_url(db_url, engine_config=config.engine, retry=config.retry)
    try:
        jobs = queue.requeue_failed(
            since=since,
            until=until,
            limit=args.limit if args.limit and args.limit > 0 else None,
            dry_run=args.dry_run,
        )
    except JobQueueError as exc:
        LOGGER.error("Failed to requeue jobs: %s", exc)
        return 1
    finally:
        queue.close()

    if not jobs:
        LOGGER.info("No jobs matched the selection criteria.")
        return 0

    for job in jobs:
        prefix = "[DRY-RUN] Would requeue" if args.dry_run else "Requeued"
        LOGGER.info("%s job %s (%s)", prefix, job.id, job.url)

    if not args.dry_run:
        LOGGER.info("Requeued %d job(s).", len(jobs))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
