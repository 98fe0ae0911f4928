"""Public entry point for the host adapter layer.

The host calls `start(config)` once, `send(record)` per delivered measurement
and `stop()` on shutdown. `send` never raises storage problems back into the
host: connectivity, capacity and serialization failures are logged, counted in
the diagnostics and the record is dropped, so the host keeps dispatching.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

from config import IngestConfig

from .buffer import IngestBuffer
from .connection import ConnectionGuard
from .diagnostics import IngestDiagnostics
from .errors import CapacityExceeded, ConnectionExhausted, SerializationError
from .models import utc_now
from .scheduler import FlushScheduler, PeriodicTicker

if TYPE_CHECKING:
    from store.base import DocumentStore

logger = logging.getLogger(__name__)


def _millis(value: int) -> timedelta:
    return timedelta(milliseconds=value)


class IngestFacade:
    """Composes buffer, connection guard and flush scheduler."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        collection: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Create a facade writing to `collection` of the given store."""
        self._store = store
        self.collection = collection
        self._clock = clock
        self.diagnostics = IngestDiagnostics(clock=clock)

        self.config: IngestConfig | None = None
        self._buffer: IngestBuffer | None = None
        self._guard: ConnectionGuard | None = None
        self._scheduler: FlushScheduler | None = None
        self._ticker: PeriodicTicker | None = None
        self._lifecycle_lock = threading.Lock()
        self._running = False
        # Guards `_running` and `_closed` against sends that passed the running check.
        self._sends_idle = threading.Condition()
        self._sends_in_flight = 0
        self._closed = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def buffered(self) -> int:
        """Number of records currently staged."""
        return 0 if self._buffer is None else len(self._buffer)

    @property
    def buffer(self) -> IngestBuffer | None:
        return self._buffer

    @property
    def guard(self) -> ConnectionGuard | None:
        return self._guard

    @property
    def scheduler(self) -> FlushScheduler | None:
        return self._scheduler

    def start(self, config: IngestConfig | None = None) -> None:
        """Apply configuration, connect and arm the housekeeping tick.

        Raises:
            ConnectionExhausted: the initial connection could not be made.
        """
        with self._lifecycle_lock:
            if self._running:
                logger.debug("Ingest facade already started")
                return
            config = config or IngestConfig()
            self.config = config

            self._buffer = IngestBuffer(
                max_capacity=config.max_buffer,
                ttl=_millis(config.ttl_millis),
                clock=self._clock,
            )
            self._guard = ConnectionGuard(
                self._store,
                max_attempts=config.connect_attempts,
                base_delay=config.connect_base_delay_millis / 1000,
                max_delay=config.connect_max_delay_millis / 1000,
            )
            self._scheduler = FlushScheduler(
                self._buffer,
                self._guard,
                collection=self.collection,
                batch_size=config.batch_size,
                flush_interval=_millis(config.flush_interval_millis) if config.flush_interval_millis > 0 else None,
                requeue_failed=config.requeue_failed_batches,
                max_write_attempts=config.max_write_attempts,
                diagnostics=self.diagnostics,
                clock=self._clock,
            )

            try:
                self._guard.connect()
            except ConnectionExhausted as exc:
                self.diagnostics.failure("connect_failures", exc)
                raise

            self._ticker = PeriodicTicker(config.housekeeping_interval_millis / 1000, self._scheduler.housekeeping)
            self._ticker.start()
            with self._sends_idle:
                self._running = True
                self._closed = False
        logger.info("Ingest facade started (collection=%s)", self.collection)

    def send(self, record: Mapping[str, Any]) -> int | None:
        """Stage a record; return its fingerprint, or None when it was dropped."""
        with self._sends_idle:
            if not self._running or self._buffer is None or self._guard is None or self._scheduler is None:
                logger.warning("Dropping record: ingest facade is not running")
                return None
            self._sends_in_flight += 1
        try:
            return self._send(record, self._buffer, self._guard, self._scheduler)
        finally:
            with self._sends_idle:
                self._sends_in_flight -= 1
                self._sends_idle.notify_all()

    def _send(
        self,
        record: Mapping[str, Any],
        buffer: IngestBuffer,
        guard: ConnectionGuard,
        scheduler: FlushScheduler,
    ) -> int | None:
        try:
            guard.ensure_connected()
        except ConnectionExhausted as exc:
            logger.error("Dropping record: %s", exc)
            self.diagnostics.failure("connect_failures", exc)
            self.diagnostics.count("rejected_disconnected")
            return None

        try:
            key = buffer.put(record)
        except CapacityExceeded as exc:
            logger.warning("Dropping record: %s", exc)
            self.diagnostics.failure("rejected_capacity", exc)
            return None
        except SerializationError as exc:
            logger.warning("Dropping record: %s", exc)
            self.diagnostics.failure("rejected_serialization", exc)
            return None

        with self._sends_idle:
            closed = self._closed
        if closed:
            # stop() gave up waiting for this send; no final flush will pick it up.
            buffer.discard(key)
            logger.warning("Dropping record: ingest facade stopped while it was being staged")
            self.diagnostics.count("rejected_disconnected")
            return None
        self.diagnostics.count("staged")

        if scheduler.should_flush():
            try:
                scheduler.flush()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Flush triggered by send failed")
                self.diagnostics.failure("write_failures", exc)
        return key

    def flush(self) -> int:
        """Flush on demand; return the number of documents written."""
        if self._scheduler is None:
            return 0
        return self._scheduler.flush()

    def stop(self) -> None:
        """Disarm the tick, flush what is left (best effort) and close the store.

        Sends already past the running check and flushes already under way are
        waited for, each bounded by `stop_timeout_millis`, so nothing they stage
        is left behind a closed store.
        """
        with self._lifecycle_lock:
            with self._sends_idle:
                if not self._running or self._scheduler is None or self._guard is None:
                    return
                self._running = False
            timeout = self.config.stop_timeout_millis / 1000 if self.config is not None else None

            if self._ticker is not None:
                self._ticker.stop(timeout)
                self._ticker = None
            with self._sends_idle:
                if not self._sends_idle.wait_for(lambda: self._sends_in_flight == 0, timeout=timeout):
                    logger.warning("Timed out waiting for %d in-flight send(s); closing anyway", self._sends_in_flight)
                self._closed = True
            if not self._scheduler.wait_idle(timeout):
                logger.warning("Timed out waiting for in-flight flush; closing anyway")
            self._scheduler.flush()
            if self.buffered:
                logger.warning("Stopping with %d unflushed record(s)", self.buffered)
            self._guard.close()
        logger.info("Ingest facade stopped")

    def degraded_status(self) -> dict[str, Any]:
        """Return diagnostics plus the current buffer size."""
        status = self.diagnostics.snapshot()
        status["buffered"] = self.buffered
        return status
