"""Document store backends for the ingest engine.

The engine only needs `connect`, `bulk_insert(collection, documents)` and
`close` (see `DocumentStore`); any backend providing those can be plugged in.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import DocumentStore
from .data_api import DataApiDocumentStore, DataApiHttpError
from .duckdb_store import DuckDBDocumentStore
from .memory import InMemoryDocumentStore

if TYPE_CHECKING:
    from config import StoreConfig


def create_store(config: StoreConfig) -> DocumentStore:
    """Build the store backend selected by `config.backend`."""
    if config.backend == "duckdb":
        return DuckDBDocumentStore(path=config.uri)
    if config.backend == "data_api":
        return DataApiDocumentStore(
            base_url=config.uri,
            api_key=config.api_key or "",
            database=config.database,
            data_source=config.data_source,
        )
    if config.backend == "memory":
        return InMemoryDocumentStore()
    raise ValueError(f"Unknown store backend: {config.backend!r}")


__all__ = [
    "DataApiDocumentStore",
    "DataApiHttpError",
    "DocumentStore",
    "DuckDBDocumentStore",
    "InMemoryDocumentStore",
    "create_store",
]
