"""Configuration shared by the scrape consumer and its command-line tools."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Optional

DEFAULT_USER_AGENT = "media-scraper/1.0"
ENV_PREFIX = "MEDIA_SCRAPER_"


@dataclass(slots=True)
class TimeoutConfig:
    request_timeout: float = 10.0


@dataclass(slots=True)
class BufferConfig:
    batch_size: int = 50
    flush_interval: float = 5.0


@dataclass(slots=True)
class WorkerConfig:
    # Fixed for the process lifetime. Re-measure the fetch to parse time
    # ratio on the deployment host before changing it.
    concurrency: int = 4
    poll_interval: float = 1.0
    drain_timeout: float = 30.0
    stall_timeout: float = 300.0


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    backoff_type: str = "exponential"
    base_delay: float = 1.0


@dataclass(slots=True)
class EngineConfig:
    """Connection pool settings applied to every SQLAlchemy engine we create."""

    pool_size: int = 2
    max_overflow: int = 0
    pool_recycle: int = 1800
    pool_pre_ping: bool = True

    def engine_options(self, db_url: str) -> dict[str, Any]:
        if db_url.startswith("sqlite"):
            # SQLite uses its own pool classes that reject QueuePool sizing.
            return {}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": self.pool_pre_ping,
        }


@dataclass(slots=True)
class ScraperConfig:
    db_url: Optional[str] = None
    queue_db_url: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT
    log_level: str = "INFO"
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)

    @property
    def resolved_queue_db_url(self) -> Optional[str]:
        return self.queue_db_url or self.db_url


def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return max(minimum, parsed)


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return max(0.0, parsed)


def load_config_from_env() -> ScraperConfig:
    """Build a configuration from ``MEDIA_SCRAPER_*`` environment variables.

    Unparseable numeric values fall back to the defaults instead of failing,
    so a typo in a deployment manifest never keeps the worker from starting.
    """

    defaults = ScraperConfig()
    return ScraperConfig(
        db_url=_env("DATABASE_URL"),
        queue_db_url=_env("QUEUE_DATABASE_URL"),
        user_agent=_env("USER_AGENT") or defaults.user_agent,
        log_level=(_env("LOG_LEVEL") or defaults.log_level).upper(),
        timeout=TimeoutConfig(
            request_timeout=_env_float("REQUEST_TIMEOUT", defaults.timeout.request_timeout),
        ),
        buffer=BufferConfig(
            batch_size=_env_int("BATCH_SIZE", defaults.buffer.batch_size, minimum=1),
            flush_interval=_env_float("FLUSH_INTERVAL", defaults.buffer.flush_interval),
        ),
        worker=WorkerConfig(
            concurrency=_env_int("CONCURRENCY", defaults.worker.concurrency, minimum=1),
            poll_interval=_env_float("POLL_INTERVAL", defaults.worker.poll_interval),
            drain_timeout=_env_float("DRAIN_TIMEOUT", defaults.worker.drain_timeout),
            stall_timeout=_env_float("STALL_TIMEOUT", defaults.worker.stall_timeout),
        ),
        retry=RetryConfig(
            max_attempts=_env_int("MAX_ATTEMPTS", defaults.retry.max_attempts, minimum=1),
            backoff_type=_env("BACKOFF_TYPE") or defaults.retry.backoff_type,
            base_delay=_env_float("BACKOFF_DELAY", defaults.retry.base_delay),
        ),
        engine=EngineConfig(
            pool_size=_env_int("DB_POOL_SIZE", defaults.engine.pool_size),
            max_overflow=_env_int("DB_MAX_OVERFLOW", defaults.engine.max_overflow),
            pool_recycle=_env_int("DB_POOL_RECYCLE", defaults.engine.pool_recycle),
        ),
    )
