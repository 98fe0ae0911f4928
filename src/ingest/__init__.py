"""Buffered measurement ingest engine.

This package stages incoming measurement records in a bounded, deduplicating,
TTL-bounded in-memory buffer and writes them to a document store in batches:

- Records are keyed by a fingerprint of their payload (duplicates collapse).
- Flushes are size- or time-triggered, bounded per call, and single-flight.
- The store connection is retried with exponential backoff and re-established
  lazily from the ingest path.
"""

from .buffer import IngestBuffer
from .connection import ConnectionGuard, ConnectionState
from .diagnostics import IngestDiagnostics
from .errors import CapacityExceeded, ConnectionExhausted, IngestError, SerializationError, WriteError
from .facade import IngestFacade
from .fingerprint import canonicalize, fingerprint
from .models import StagedRecord
from .scheduler import FlushScheduler, PeriodicTicker

__all__ = [
    "CapacityExceeded",
    "ConnectionExhausted",
    "ConnectionGuard",
    "ConnectionState",
    "FlushScheduler",
    "IngestBuffer",
    "IngestDiagnostics",
    "IngestError",
    "IngestFacade",
    "PeriodicTicker",
    "SerializationError",
    "StagedRecord",
    "WriteError",
    "canonicalize",
    "fingerprint",
]
