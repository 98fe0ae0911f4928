"""Embedded DuckDB document store.

Each collection maps to a table holding the identity/timing columns the
engine assigns plus the full document as stable JSON.
"""

from __future__ import annotations

import json
import re
import threading
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import duckdb

from ingest.errors import WriteError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class DuckDBOptions:
    path: Path


class DuckDBDocumentStore:
    """DuckDB-backed store, one table per collection."""

    def __init__(self, *, path: str | Path) -> None:
        """Create a store for the database file at `path` (not opened yet)."""
        self._opts = DuckDBOptions(path=Path(path))
        self._lock = threading.Lock()
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._tables: set[str] = set()

    def connect(self) -> None:
        """Open (or reopen) the database file."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                self._tables.clear()
            try:
                self._conn = duckdb.connect(str(self._opts.path))
            except duckdb.Error as exc:
                raise ConnectionError(f"cannot open DuckDB database {self._opts.path}: {exc}") from exc

    def _ensure_table(self, conn: duckdb.DuckDBPyConnection, table: str) -> None:
        """Create the backing table for a collection if it does not exist yet."""
        if table in self._tables:
            return
        conn.execute(
            f"""
            create table if not exists {table} (
              fingerprint bigint not null,
              observed_at timestamptz,
              expires_at timestamptz,
              document_json varchar not null
            )
            """
        )
        self._tables.add(table)

    def bulk_insert(self, collection: str, documents: Sequence[Mapping[str, Any]]) -> None:
        """Insert a batch inside a single transaction.

        Note: documents are stored as JSON with sorted keys; non-JSON values
        (timestamps) are stringified.
        """
        if not _IDENTIFIER.match(collection):
            raise WriteError(f"invalid collection name: {collection!r}", collection=collection)
        rows = [
            [
                document.get("fingerprint"),
                document.get("observed_at"),
                document.get("expires_at"),
                json.dumps(document, separators=(",", ":"), sort_keys=True, default=str),
            ]
            for document in documents
        ]
        insert_sql = f"insert into {collection} (fingerprint, observed_at, expires_at, document_json) values (?, ?, ?, ?)"
        with self._lock:
            conn = self._conn
            if conn is None:
                raise ConnectionError("DuckDB store is not connected")
            try:
                self._ensure_table(conn, collection)
                conn.execute("begin transaction")
                conn.executemany(insert_sql, rows)
                conn.execute("commit")
            except duckdb.ConnectionException as exc:
                raise ConnectionError(f"DuckDB connection lost: {exc}") from exc
            except duckdb.Error as exc:
                with suppress(duckdb.Error):
                    conn.execute("rollback")
                raise WriteError(
                    f"DuckDB insert into {collection} failed: {exc}", collection=collection, batch_size=len(rows)
                ) from exc

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self._tables.clear()
