"""Single-flight batch flushing and periodic housekeeping.

`FlushScheduler.flush()` drains the buffer into bounded batches and writes them
through the connection guard. At most one flush runs at a time; a second caller
(the housekeeping tick racing a size-triggered send, for example) sees the
`flushing` flag and returns immediately.

The number of batches is fixed when a flush starts, so records that arrive
while it runs wait for the next cycle instead of keeping the flush alive.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Callable

from .buffer import IngestBuffer
from .connection import ConnectionGuard
from .diagnostics import IngestDiagnostics
from .errors import WriteError
from .models import StagedRecord, utc_now

logger = logging.getLogger(__name__)


class FlushScheduler:
    """Drains an `IngestBuffer` into a document store collection."""

    def __init__(
        self,
        buffer: IngestBuffer,
        guard: ConnectionGuard,
        *,
        collection: str,
        batch_size: int,
        flush_interval: timedelta | None,
        requeue_failed: bool = True,
        max_write_attempts: int = 3,
        diagnostics: IngestDiagnostics | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Create a scheduler.

        Args:
            buffer: Staging buffer to drain.
            guard: Connection guard used for every write.
            collection: Target collection name.
            batch_size: Max documents per bulk insert.
            flush_interval: Time-based flush period; `None` disables it.
            requeue_failed: Put a failed batch back into the buffer instead of
                dropping it.
            max_write_attempts: Failed writes a record may survive before it is
                dropped (only with `requeue_failed`).
            diagnostics: Counters for written/failed/dropped records.
            clock: Wall-clock source.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0. Got: {batch_size}")
        if max_write_attempts <= 0:
            raise ValueError(f"max_write_attempts must be > 0. Got: {max_write_attempts}")
        self._buffer = buffer
        self._guard = guard
        self.collection = collection
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.requeue_failed = requeue_failed
        self.max_write_attempts = max_write_attempts
        self._diagnostics = diagnostics or IngestDiagnostics(clock=clock)
        self._clock = clock

        self._state_lock = threading.Lock()
        self._idle = threading.Condition(self._state_lock)
        self._flushing = False
        self._next_flush_deadline = self._deadline_after(clock())

    def _deadline_after(self, now: datetime) -> datetime | None:
        if self.flush_interval is None:
            return None
        return now + self.flush_interval

    @property
    def flushing(self) -> bool:
        with self._state_lock:
            return self._flushing

    @property
    def next_flush_deadline(self) -> datetime | None:
        with self._state_lock:
            return self._next_flush_deadline

    def should_flush(self, now: datetime | None = None) -> bool:
        now = self._clock() if now is None else now
        return self._buffer.should_flush(now, self.batch_size, self.next_flush_deadline)

    def flush(self) -> int:
        """Write what is currently staged; return the number of documents written.

        No-op when a flush is already running, the store is not connected, or
        the buffer is empty. Never reconnects.
        """
        with self._state_lock:
            if self._flushing:
                logger.debug("Flush skipped: another flush is in progress")
                return 0
            if not self._guard.is_connected:
                logger.debug("Flush skipped: document store not connected")
                return 0
            staged = len(self._buffer)
            if staged == 0:
                logger.debug("Flush skipped: buffer is empty")
                return 0
            self._flushing = True

        written = 0
        try:
            batch_count = math.ceil(staged / self.batch_size)
            for _ in range(batch_count):
                batch = self._buffer.drain_up_to(self.batch_size)
                if not batch:
                    break
                try:
                    self._guard.insert_batch(self.collection, [record.to_document() for record in batch])
                except WriteError as exc:
                    self._handle_failed_batch(batch, exc)
                    break
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Document store raised an unexpected error during bulk insert")
                    self._handle_failed_batch(batch, exc)
                    break
                written += len(batch)
                self._diagnostics.count("written", len(batch))
                self._diagnostics.count("batches_written")
            if written:
                logger.info("Flushed %d record(s) to %s", written, self.collection)
            return written
        finally:
            with self._state_lock:
                self._next_flush_deadline = self._deadline_after(self._clock())
                self._flushing = False
                self._idle.notify_all()

    def _handle_failed_batch(self, batch: list[StagedRecord], exc: Exception) -> None:
        logger.error("Flush of %d record(s) to %s failed: %s", len(batch), self.collection, exc)
        self._diagnostics.failure("write_failures", exc)
        if not self.requeue_failed:
            logger.warning("Dropping %d record(s) from failed batch", len(batch))
            self._diagnostics.count("dropped_write", len(batch))
            return

        retryable: list[StagedRecord] = []
        exhausted = 0
        for record in batch:
            retried = record.with_failed_attempt()
            if retried.attempts >= self.max_write_attempts:
                exhausted += 1
            else:
                retryable.append(retried)
        rejected = self._buffer.requeue(retryable)
        dropped = exhausted + len(rejected)
        self._diagnostics.count("requeued", len(retryable) - len(rejected))
        self._diagnostics.count("dropped_write", dropped)
        if dropped:
            logger.warning(
                "Dropping %d record(s) from failed batch (%d out of write attempts, %d not requeued)",
                dropped,
                exhausted,
                len(rejected),
            )

    def housekeeping(self) -> None:
        """Expire stale records, then flush if the flush deadline has passed."""
        now = self._clock()
        expired = self._buffer.sweep_expired(now)
        self._diagnostics.count("expired", expired)
        deadline = self.next_flush_deadline
        if deadline is not None and now > deadline:
            self.flush()
        logger.debug("Housekeeping completed (expired=%d, buffered=%d)", expired, len(self._buffer))

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no flush is running; return False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._flushing, timeout=timeout)


class PeriodicTicker:
    """Calls a function on a fixed interval from one daemon thread."""

    def __init__(self, interval: float, fn: Callable[[], None], *, name: str = "ingest-housekeeping") -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0. Got: {interval}")
        self.interval = interval
        self._fn = fn
        self._name = name
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Disarm the ticker and wait (bounded) for a running tick to return."""
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self._fn()
            except Exception:  # noqa: BLE001 - a failed tick must not stop housekeeping
                logger.exception("Periodic %s tick failed", self._name)
