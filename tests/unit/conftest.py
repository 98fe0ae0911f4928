from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeStore:
    """Document store double that records calls and can be told to fail."""

    def __init__(self) -> None:
        self.connect_calls = 0
        self.close_calls = 0
        self.connect_failures = 0
        self.insert_failures = 0
        self.insert_error: Exception = ConnectionError("write refused")
        self.inserts: list[tuple[str, list[dict[str, Any]]]] = []
        self.insert_attempts = 0
        self.insert_started = threading.Event()
        self.release: threading.Event | None = None
        self.on_insert: Callable[[], None] | None = None
        self.connect_started = threading.Event()
        self.connect_gate: threading.Event | None = None

    def connect(self) -> None:
        self.connect_calls += 1
        self.connect_started.set()
        if self.connect_gate is not None:
            self.connect_gate.wait(5)
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionError("connection refused")

    def bulk_insert(self, collection: str, documents: Sequence[Mapping[str, Any]]) -> None:
        self.insert_attempts += 1
        self.insert_started.set()
        if self.release is not None:
            self.release.wait(5)
        if self.on_insert is not None:
            self.on_insert()
        if self.insert_failures > 0:
            self.insert_failures -= 1
            raise self.insert_error
        self.inserts.append((collection, [dict(document) for document in documents]))

    def close(self) -> None:
        self.close_calls += 1

    @property
    def batch_sizes(self) -> list[int]:
        return [len(documents) for _, documents in self.inserts]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture(autouse=True)
def slept(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Record connection backoff sleeps instead of sleeping."""
    delays: list[float] = []
    monkeypatch.setattr("ingest.connection.time.sleep", delays.append)
    return delays
