"""CLI utility to enqueue URLs as scrape jobs."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Sequence
from urllib.parse import urlsplit

from models import Base

from .config import load_config_from_env
from .consume import configure_logging
from .jobs import BackoffPolicy, JobQueueError, SqlJobQueue

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class UrlLoaderStats:
    total: int = 0
    emitted: int = 0
    skipped_invalid: int = 0
    skipped_duplicate: int = 0


def is_http_url(url: str) -> bool:
    parts = urlsplit(url)
    return parts.scheme in {"http", "https"} and bool(parts.netloc)


class UrlLoader:
    """Yield unique http(s) URLs from CLI values and text/NDJSON files.

    File lines may be bare URLs or JSON objects with a ``url`` key; blank
    lines and ``#`` comments are ignored.
    """

    def __init__(self, urls: Iterable[str] = (), files: Iterable[Path] = ()) -> None:
        self._urls = list(urls)
        self._files = list(files)
        self._seen: set[str] = set()
        self.stats = UrlLoaderStats()

    def __iter__(self) -> Iterator[str]:
        for url in self._urls:
            accepted = self._accept(url, source="command line")
            if accepted:
                yield accepted
        for path in self._files:
            yield from self._iter_file(path)

    def _iter_file(self, path: Path) -> Iterator[str]:
        if not path.exists():
            raise FileNotFoundError(f"URL file '{path}' does not exist")

        with path.open("r", encoding="utf-8") as handle:
            for line_number, raw_line in enumerate(handle, 1):
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                url: object = line
                if line.startswith("{"):
                    try:
                        url = json.loads(line).get("url")
                    except (json.JSONDecodeError, AttributeError):
                        url = None
                accepted = self._accept(url, source=f"{path}:{line_number}")
                if accepted:
                    yield accepted

    def _accept(self, url: object, *, source: str) -> str | None:
        self.stats.total += 1
        if not isinstance(url, str) or not is_http_url(url.strip()):
            self.stats.skipped_invalid += 1
            LOGGER.warning("Skipping invalid URL %r from %s", url, source)
            return None
        url = url.strip()
        if url in self._seen:
            self.stats.skipped_duplicate += 1
            return None
        self._seen.add(url)
        self.stats.emitted += 1
        return url


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Queue URLs for media scraping")
    parser.add_argument("--db-url", type=str, help="SQLAlchemy database URL for the job queue")
    parser.add_argument("--url", dest="urls", action="append", default=[], help="URL to scrape (repeatable)")
    parser.add_argument(
        "--urls-file",
        dest="files",
        action="append",
        type=Path,
        default=[],
        help="File with one URL per line or NDJSON objects carrying a 'url' key (repeatable)",
    )
    parser.add_argument("--max-attempts", type=int, help="Attempts before a job is failed permanently")
    parser.add_argument("--backoff-delay", type=float, help="Base retry delay in seconds")
    parser.add_argument(
        "--backoff-type",
        choices=("exponential", "fixed"),
        help="Retry delay policy (default: exponential)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    config = load_config_from_env()
    db_url = args.db_url or config.resolved_queue_db_url
    if not db_url:
        parser.error("--db-url (or MEDIA_SCRAPER_QUEUE_DATABASE_URL) is required")
    if not args.urls and not args.files:
        parser.error("Provide at least one --url or --urls-file")

    retry = config.retry
    if args.max_attempts is not None:
        retry.max_attempts = args.max_attempts
    try:
        backoff = BackoffPolicy(
            kind=args.backoff_type or retry.backoff_type,
            delay=args.backoff_delay if args.backoff_delay is not None else retry.base_delay,
        )
    except ValueError as exc:
        parser.error(str(exc))

    loader = UrlLoader(args.urls, args.files)
    try:
        urls = list(loader)
    except FileNotFoundError as exc:
        parser.error(str(exc))

    if not urls:
        LOGGER.warning("No valid URLs to queue (%d skipped)", loader.stats.skipped_invalid)
        return 1

    queue = SqlJobQueue.from_url(db_url, engine_config=config.engine, retry=retry)
    try:
        Base.metadata.create_all(queue.engine)
        job_ids = queue.enqueue(urls, max_attempts=retry.max_attempts, backoff=backoff)
    except (JobQueueError, ValueError) as exc:
        LOGGER.error("Failed to queue jobs: %s", exc)
        return 1
    finally:
        queue.close()

    LOGGER.info(
        "Queued %d jobs (%d invalid, %d duplicate skipped)",
        len(job_ids),
        loader.stats.skipped_invalid,
        loader.stats.skipped_duplicate,
    )
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
