"""Error taxonomy for the ingest engine.

Every error here is caught at the boundary where it occurs (facade or flush
scheduler) and reported through `IngestDiagnostics`; only `start()` lets
`ConnectionExhausted` escape.
"""

from __future__ import annotations


class IngestError(RuntimeError):
    """Base class for ingest engine errors."""


class ConnectionExhausted(IngestError):
    """All connection attempts to the document store failed."""

    def __init__(self, *, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Unable to connect to the document store after {attempts} attempt(s): {last_error}")


class CapacityExceeded(IngestError):
    """The buffer is full; the record was not staged."""

    def __init__(self, *, capacity: int) -> None:
        self.capacity = capacity
        super().__init__(f"Ingest buffer is full ({capacity} records); record rejected")


class WriteError(IngestError):
    """The store rejected or failed a batch insert."""

    def __init__(self, message: str, *, collection: str | None = None, batch_size: int | None = None) -> None:
        self.collection = collection
        self.batch_size = batch_size
        super().__init__(message)


class SerializationError(IngestError):
    """A record could not be canonically serialized for fingerprinting."""
