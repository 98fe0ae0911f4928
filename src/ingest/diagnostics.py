"""Diagnostic channel for degraded ingestion.

Storage problems never propagate into the host adapter; they are logged and
counted here so the host can poll `snapshot()` to see whether ingestion is
degraded.
"""

from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime
from typing import Any, Callable

from .models import utc_now

COUNTERS = (
    "staged",
    "written",
    "batches_written",
    "expired",
    "rejected_capacity",
    "rejected_serialization",
    "rejected_disconnected",
    "write_failures",
    "requeued",
    "dropped_write",
    "connect_failures",
)


class IngestDiagnostics:
    """Thread-safe counters plus a failure time window."""

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()
        self._first_failure_at: datetime | None = None
        self._last_failure_at: datetime | None = None
        self._last_error: str | None = None

    def count(self, name: str, n: int = 1) -> None:
        if name not in COUNTERS:
            raise KeyError(f"unknown diagnostic counter: {name}")
        if n <= 0:
            return
        with self._lock:
            self._counts[name] += n

    def failure(self, name: str, error: BaseException, n: int = 1) -> None:
        """Count a failure and widen the degraded window."""
        self.count(name, n)
        now = self._clock()
        with self._lock:
            self._first_failure_at = self._first_failure_at or now
            self._last_failure_at = now
            self._last_error = f"{type(error).__name__}: {error}"

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def snapshot(self) -> dict[str, Any]:
        """Return a point-in-time copy of all counters and the failure window."""
        with self._lock:
            status: dict[str, Any] = {name: self._counts[name] for name in COUNTERS}
            status["first_failure_at"] = self._first_failure_at
            status["last_failure_at"] = self._last_failure_at
            status["last_error"] = self._last_error
        return status
