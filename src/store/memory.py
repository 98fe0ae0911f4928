"""In-memory document store for tests and local debugging."""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from typing import Any


class InMemoryDocumentStore:
    """Keeps every inserted batch in memory (thread-safe)."""

    def __init__(self) -> None:
        """Create an empty, disconnected store."""
        self._lock = threading.Lock()
        self._batches: list[tuple[str, list[dict[str, Any]]]] = []
        self.connected = False

    def connect(self) -> None:
        with self._lock:
            self.connected = True

    def bulk_insert(self, collection: str, documents: Sequence[Mapping[str, Any]]) -> None:
        """Record a copy of the batch."""
        with self._lock:
            if not self.connected:
                raise ConnectionError("in-memory store is not connected")
            self._batches.append((collection, [dict(document) for document in documents]))

    def close(self) -> None:
        with self._lock:
            self.connected = False

    def batches(self, collection: str | None = None) -> list[list[dict[str, Any]]]:
        """Return the inserted batches, optionally for one collection only."""
        with self._lock:
            return [list(batch) for name, batch in self._batches if collection is None or name == collection]

    def snapshot(self, collection: str | None = None) -> list[dict[str, Any]]:
        """Return a point-in-time copy of all inserted documents, in order."""
        return [document for batch in self.batches(collection) for document in batch]
