"""Batched persistence of extracted media references."""

from __future__ import annotations

import logging
import threading
from typing import Sequence

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from models import Media

from .config import BufferConfig, EngineConfig
from .extraction import MediaReference

LOGGER = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when a batch of media records cannot be written."""


class MediaStore:
    """Writes media rows; every call is a single transaction."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine)

    @classmethod
    def from_url(cls, db_url: str, *, engine_config: EngineConfig | None = None) -> "MediaStore":
        engine_config = engine_config or EngineConfig()
        return cls(create_engine(db_url, **engine_config.engine_options(db_url)))

    @property
    def engine(self) -> Engine:
        return self._engine

    def bulk_insert(self, records: Sequence[MediaReference]) -> None:
        if not records:
            return
        try:
            with self._session_factory() as session:
                session.add_all(
                    Media(
                        type=record.kind.value,
                        url=record.url,
                        source_url=record.source_url,
                        alt_text=record.alt_text,
                    )
                    for record in records
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

    def close(self) -> None:
        self._engine.dispose()


class PersistenceBuffer:
    """In-memory batch of media records flushed to a :class:`MediaStore`.

    ``flush`` swaps the pending batch for an empty list under the lock and
    writes it without holding the lock, so appends never wait on the database.
    A failed write puts the whole batch back in front of anything appended in
    the meantime; the next flush retries the combined batch.
    """

    def __init__(self, store: MediaStore, *, capacity: int = BufferConfig().batch_size) -> None:
        if capacity < 1:
            raise ValueError("Buffer capacity must be at least 1")
        self._store = store
        self._capacity = capacity
        self._lock = threading.Lock()
        self._pending: list[MediaReference] = []
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_full(self) -> bool:
        with self._lock:
            return len(self._pending) >= self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def append(self, record: MediaReference) -> bool:
        """Stage ``record``; True when this append brought the buffer to capacity."""
        with self._lock:
            if self._closed:
                raise PersistenceError(f"Buffer is closed; rejected {record.url} from {record.source_url}")
            self._pending.append(record)
            return len(self._pending) == self._capacity

    def close(self) -> None:
        """Refuse further appends. Records already staged can still be flushed."""
        with self._lock:
            self._closed = True

    def snapshot(self) -> list[MediaReference]:
        with self._lock:
            return list(self._pending)

    def flush(self) -> bool:
        with self._lock:
            batch, self._pending = self._pending, []
        if not batch:
            return True

        try:
            self._store.bulk_insert(batch)
        except PersistenceError as exc:
            with self._lock:
                self._pending = batch + self._pending
                pending = len(self._pending)
            LOGGER.error(
                "Failed to save %d media records; %d now waiting for the next flush: %s",
                len(batch),
                pending,
                exc,
            )
            return False

        LOGGER.info("Saved %d media records", len(batch))
        return True


class PeriodicFlusher:
    """Background thread that flushes the buffer on a fixed interval."""

    def __init__(self, buffer: PersistenceBuffer, interval: float = BufferConfig().flush_interval) -> None:
        self._buffer = buffer
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="media-buffer-flush", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._buffer.flush()
            except Exception:
                LOGGER.exception("Periodic flush raised unexpectedly")

    def cancel(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                LOGGER.warning("Flush timer did not stop within %.1fs", timeout or 0.0)
        self._thread = None


__all__ = ["MediaStore", "PeriodicFlusher", "PersistenceBuffer", "PersistenceError"]
