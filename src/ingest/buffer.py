"""Bounded, deduplicating, TTL-bounded staging buffer.

Records are keyed by fingerprint, so re-delivering an identical payload
overwrites its slot instead of growing the buffer. Capacity is enforced at
insertion by rejecting new fingerprints; nothing is ever evicted to make room.

All access to the underlying map goes through one lock. Callers never get the
map itself, only copies (`snapshot`) or records removed from it (`drain_up_to`).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any, Callable

from .errors import CapacityExceeded
from .models import StagedRecord, prepare_record, utc_now

logger = logging.getLogger(__name__)


class IngestBuffer:
    """Keyed staging map with expiry and flush-trigger evaluation."""

    def __init__(
        self,
        *,
        max_capacity: int,
        ttl: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_capacity <= 0:
            raise ValueError(f"max_capacity must be > 0. Got: {max_capacity}")
        if ttl <= timedelta(0):
            raise ValueError(f"ttl must be positive. Got: {ttl}")
        self.max_capacity = max_capacity
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        # dicts keep insertion order; oldest entries come first.
        self._entries: dict[int, StagedRecord] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def put(self, record: Mapping[str, Any]) -> int:
        """Stage a record and return its fingerprint.

        Raises:
            SerializationError: the record cannot be canonicalized.
            CapacityExceeded: the buffer is full and the fingerprint is new.
        """
        staged = prepare_record(record, ttl=self.ttl, now=self._clock())
        with self._lock:
            if staged.fingerprint not in self._entries and len(self._entries) >= self.max_capacity:
                raise CapacityExceeded(capacity=self.max_capacity)
            self._entries[staged.fingerprint] = staged
        return staged.fingerprint

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Remove every entry whose `expires_at` is before `now`; return the count."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [key for key, staged in self._entries.items() if staged.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.warning("Expired %d unflushed record(s) from the ingest buffer", len(expired))
        return len(expired)

    def should_flush(self, now: datetime, batch_size: int, flush_deadline: datetime | None) -> bool:
        """True when a full batch is staged or the flush deadline has passed."""
        if len(self) >= batch_size:
            return True
        return flush_deadline is not None and now > flush_deadline

    def drain_up_to(self, n: int) -> list[StagedRecord]:
        """Remove and return up to `n` of the oldest entries.

        Removal is eager: a caller whose write fails must `requeue` the batch.
        """
        if n <= 0:
            return []
        with self._lock:
            keys = []
            for key in self._entries:
                if len(keys) >= n:
                    break
                keys.append(key)
            return [self._entries.pop(key) for key in keys]

    def requeue(self, records: Iterable[StagedRecord]) -> list[StagedRecord]:
        """Put drained records back ahead of everything staged since, keeping
        their original expiry.

        A fingerprint that was staged again in the meantime keeps the newer
        record. Returns the records that were not requeued (slot taken or no
        room left).
        """
        rejected: list[StagedRecord] = []
        with self._lock:
            room = self.max_capacity - len(self._entries)
            front: dict[int, StagedRecord] = {}
            for staged in records:
                if staged.fingerprint in self._entries or staged.fingerprint in front or len(front) >= room:
                    rejected.append(staged)
                    continue
                front[staged.fingerprint] = staged
            if front:
                # Drained records are older than anything staged since.
                self._entries = {**front, **self._entries}
        return rejected

    def discard(self, key: int) -> bool:
        """Remove one staged record; return False when it was not staged."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def snapshot(self) -> list[StagedRecord]:
        """Return a point-in-time copy of staged records, oldest first."""
        with self._lock:
            return list(self._entries.values())
