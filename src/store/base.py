"""Document store interface consumed by the ingest engine."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol


class DocumentStore(Protocol):
    """A synchronous, write-only document store.

    Stores are synchronous because the engine never holds its buffer lock
    across a store call; blocking here only delays the flushing thread.
    """

    def connect(self) -> None:
        """Open the connection. Raises `ConnectionError` on failure."""

    def bulk_insert(self, collection: str, documents: Sequence[Mapping[str, Any]]) -> None:
        """Insert a batch of documents into a collection.

        Raises `WriteError` when the batch is rejected, or `ConnectionError`
        when the connection was lost.
        """

    def close(self) -> None:
        """Close any underlying resources."""
