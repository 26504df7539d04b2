"""Ordered teardown of the consumer: stop intake, drain, flush, close."""

from __future__ import annotations

import logging
import signal
import threading
from enum import Enum
from typing import Callable, Iterable

from .jobs import JobQueue
from .persistence import MediaStore, PeriodicFlusher, PersistenceBuffer
from .worker import ScrapeWorker

LOGGER = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownState(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    FLUSHING = "flushing"
    CLOSED = "closed"


_ORDER = (ShutdownState.RUNNING, ShutdownState.DRAINING, ShutdownState.FLUSHING, ShutdownState.CLOSED)


class ShutdownCoordinator:
    """Drives ``RUNNING -> DRAINING -> FLUSHING -> CLOSED`` exactly once.

    Each step logs its own failures and the sequence always continues, so a
    broken dependency cannot keep the process from exiting. The drain wait is
    bounded by ``drain_timeout``.
    """

    def __init__(
        self,
        *,
        worker: ScrapeWorker,
        flusher: PeriodicFlusher,
        buffer: PersistenceBuffer,
        queue: JobQueue,
        store: MediaStore,
        drain_timeout: float = 30.0,
    ) -> None:
        self._worker = worker
        self._flusher = flusher
        self._buffer = buffer
        self._queue = queue
        self._store = store
        self._drain_timeout = drain_timeout
        self._state = ShutdownState.RUNNING
        self._state_lock = threading.Lock()
        self._requested = threading.Event()
        self._reason: str | None = None

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def requested(self) -> bool:
        return self._requested.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def request_shutdown(self, reason: str = "requested") -> None:
        """Record a termination trigger; safe to call from a signal handler."""
        if not self._requested.is_set():
            self._reason = reason
            self._requested.set()

    def wait_for_request(self, timeout: float | None = None) -> bool:
        return self._requested.wait(timeout)

    def install_signal_handlers(
        self, signals: Iterable[signal.Signals] = DEFAULT_SIGNALS
    ) -> dict[signal.Signals, Callable | int | None]:
        def _handler(signum: int, _frame) -> None:
            self.request_shutdown(f"signal {signal.Signals(signum).name}")

        previous: dict[signal.Signals, Callable | int | None] = {}
        for signum in signals:
            previous[signum] = signal.signal(signum, _handler)
        return previous

    def _advance(self, target: ShutdownState) -> None:
        current = _ORDER.index(self._state)
        if _ORDER.index(target) <= current:
            raise RuntimeError(f"Cannot move from {self._state.value} to {target.value}")
        LOGGER.info("Shutdown: %s -> %s", self._state.value, target.value)
        self._state = target

    def shutdown(self) -> ShutdownState:
        with self._state_lock:
            if self._state is not ShutdownState.RUNNING:
                return self._state
            self.request_shutdown()
            LOGGER.info("Shutting down consumer (%s)", self._reason)

            self._advance(ShutdownState.DRAINING)
            self._drain()

            self._advance(ShutdownState.FLUSHING)
            self._final_flush()

            self._advance(ShutdownState.CLOSED)
            self._close_connections()
            return self._state

    def _drain(self) -> None:
        try:
            self._worker.stop()
            if not self._worker.wait(self._drain_timeout):
                LOGGER.warning(
                    "%d jobs still in flight after %.1fs; continuing shutdown",
                    self._worker.in_flight(),
                    self._drain_timeout,
                )
        except Exception:
            LOGGER.exception("Error while draining worker")

    def _final_flush(self) -> None:
        try:
            self._flusher.cancel(timeout=self._drain_timeout)
        except Exception:
            LOGGER.exception("Error while cancelling flush timer")
        # Late jobs get a rejected append instead of a silent drop.
        self._buffer.close()
        try:
            if not self._buffer.flush():
                LOGGER.error("Final flush failed; %d media records were not saved", len(self._buffer))
        except Exception:
            LOGGER.exception("Error during final flush")

    def _close_connections(self) -> None:
        # Queue closes before storage.
        for name, closer in (("queue", self._queue.close), ("storage", self._store.close)):
            try:
                closer()
                LOGGER.info("Closed %s connection", name)
            except Exception:
                LOGGER.exception("Error closing %s connection", name)


__all__ = ["DEFAULT_SIGNALS", "ShutdownCoordinator", "ShutdownState"]
