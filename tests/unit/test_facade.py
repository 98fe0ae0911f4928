from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

import pytest

from config import IngestConfig
from ingest import ConnectionExhausted, IngestFacade
from store import InMemoryDocumentStore


def _config(**overrides) -> IngestConfig:
    params = {
        "batch_size": 2,
        "max_buffer": 5,
        "flush_interval_millis": 0,
        "housekeeping_interval_millis": 60_000,
        "connect_attempts": 3,
        "connect_base_delay_millis": 10,
        "stop_timeout_millis": 1000,
    }
    params.update(overrides)
    return IngestConfig(**params)


def _record(name: str) -> dict[str, object]:
    return {"context": "vessels.self", "path": f"sensors.{name}", "value": 1}


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not reached"
        time.sleep(0.001)


def test_end_to_end_size_flush_and_final_flush() -> None:
    store = InMemoryDocumentStore()
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config())

    facade.send(_record("a"))
    assert store.batches() == []
    assert facade.buffered == 1

    facade.send(_record("b"))
    assert [[d["path"] for d in batch] for batch in store.batches()] == [["sensors.a", "sensors.b"]]
    assert facade.buffered == 0

    facade.send(_record("c"))
    assert facade.buffered == 1

    facade.stop()

    batches = store.batches("measurements")
    assert [len(batch) for batch in batches] == [2, 1]
    assert batches[1][0]["path"] == "sensors.c"
    assert facade.buffered == 0
    assert not store.connected


def test_send_returns_fingerprint_and_dedups() -> None:
    store = InMemoryDocumentStore()
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config(batch_size=10))

    first = facade.send(_record("a"))
    second = facade.send(_record("a"))

    assert first is not None
    assert first == second
    assert facade.buffered == 1
    facade.stop()
    assert len(store.snapshot()) == 1
    assert store.snapshot()[0]["fingerprint"] == first


def test_time_triggered_flush_on_send(store, clock) -> None:
    facade = IngestFacade(store, collection="measurements", clock=clock)
    facade.start(_config(batch_size=100, flush_interval_millis=1000))

    facade.send(_record("a"))
    assert store.insert_attempts == 0

    clock.advance(seconds=2)
    facade.send(_record("b"))

    assert store.batch_sizes == [2]
    facade.stop()


def test_start_fails_when_store_unreachable(store, slept) -> None:
    store.connect_failures = 100
    facade = IngestFacade(store, collection="measurements")

    with pytest.raises(ConnectionExhausted):
        facade.start(_config())

    assert not facade.running
    assert store.connect_calls == 3
    assert slept == [0.01, 0.02]
    assert facade.degraded_status()["connect_failures"] == 1


def test_send_reconnects_once_and_drops_when_unreachable(store, caplog: pytest.LogCaptureFixture) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config())
    assert facade.guard is not None
    facade.guard.mark_disconnected()
    store.connect_failures = 100
    calls_before = store.connect_calls

    with caplog.at_level(logging.ERROR, logger="ingest.facade"):
        result = facade.send(_record("a"))

    assert result is None
    assert store.connect_calls - calls_before == 3
    assert facade.buffered == 0
    assert "Dropping record" in caplog.text
    status = facade.degraded_status()
    assert status["rejected_disconnected"] == 1
    assert status["last_failure_at"] is not None

    store.connect_failures = 0
    assert facade.send(_record("a")) is not None
    assert store.connect_calls - calls_before == 4
    assert facade.buffered == 1
    facade.stop()


def test_capacity_overflow_is_reported_not_raised(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config(batch_size=100, max_buffer=2))

    assert facade.send(_record("a")) is not None
    assert facade.send(_record("b")) is not None
    assert facade.send(_record("c")) is None

    assert facade.buffered == 2
    assert facade.degraded_status()["rejected_capacity"] == 1
    facade.stop()


def test_unserializable_record_is_reported_not_raised(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config())

    assert facade.send({"path": "x", "value": object()}) is None
    assert facade.send(["not", "a", "mapping"]) is None  # type: ignore[arg-type]

    assert facade.buffered == 0
    assert facade.degraded_status()["rejected_serialization"] == 2
    facade.stop()


def test_write_failure_does_not_escape_send(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config())
    store.insert_failures = 1

    facade.send(_record("a"))
    facade.send(_record("b"))

    # The store dropped the connection mid-write; the batch waits in the buffer.
    assert facade.buffered == 2
    assert facade.guard is not None and not facade.guard.is_connected
    assert facade.degraded_status()["write_failures"] == 1

    # The next send reconnects; the requeued batch goes out ahead of the new record.
    facade.send(_record("c"))
    assert store.batch_sizes == [2, 1]
    assert [d["path"] for d in store.inserts[0][1]] == ["sensors.a", "sensors.b"]
    assert facade.buffered == 0
    facade.stop()
    assert store.batch_sizes == [2, 1]


def test_send_when_not_running_is_dropped(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    assert facade.send(_record("a")) is None

    facade.start(_config())
    facade.stop()
    assert facade.send(_record("a")) is None


def test_stop_is_idempotent(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.stop()
    facade.start(_config())
    facade.stop()
    facade.stop()

    assert store.close_calls == 1


def test_manual_flush(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    assert facade.flush() == 0
    facade.start(_config(batch_size=10))
    facade.send(_record("a"))

    assert facade.flush() == 1
    assert facade.buffered == 0
    facade.stop()


def test_default_config_is_used_when_none_given(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start()

    assert facade.config == IngestConfig()
    assert facade.scheduler is not None
    assert facade.scheduler.batch_size == 100
    facade.stop()


def test_unexpected_store_error_does_not_escape_send(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config())
    store.insert_failures = 1
    store.insert_error = TypeError("document is not a mapping")

    assert facade.send(_record("a")) is not None
    assert facade.send(_record("b")) is not None

    status = facade.degraded_status()
    assert status["write_failures"] == 1
    assert status["last_error"] == "TypeError: document is not a mapping"
    assert facade.buffered == 2
    assert facade.guard is not None and facade.guard.is_connected

    facade.send(_record("c"))
    assert store.batch_sizes == [2, 1]
    facade.stop()


def test_failing_flush_is_reported_by_send(store, monkeypatch: pytest.MonkeyPatch) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config())
    assert facade.scheduler is not None

    def broken_flush() -> int:
        raise RuntimeError("scheduler bug")

    monkeypatch.setattr(facade.scheduler, "flush", broken_flush)
    facade.send(_record("a"))
    key = facade.send(_record("b"))

    assert key is not None
    assert facade.degraded_status()["last_error"] == "RuntimeError: scheduler bug"
    monkeypatch.undo()
    facade.stop()
    assert store.batch_sizes == [2]


def test_stop_waits_for_in_flight_flush_before_close(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config(batch_size=10))
    facade.send(_record("a"))
    facade.send(_record("b"))

    store.release = threading.Event()
    closed_at_insert: list[int] = []
    store.on_insert = lambda: closed_at_insert.append(store.close_calls)
    flusher = threading.Thread(target=facade.flush)
    flusher.start()
    assert store.insert_started.wait(5)

    stopper = threading.Thread(target=facade.stop)
    stopper.start()
    _wait_until(lambda: not facade.running)
    time.sleep(0.05)
    assert store.close_calls == 0

    store.release.set()
    flusher.join(5)
    stopper.join(5)

    assert closed_at_insert == [0]
    assert store.batch_sizes == [2]
    assert store.close_calls == 1


def test_stop_closes_after_flush_wait_times_out(store, caplog: pytest.LogCaptureFixture) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config(batch_size=10, stop_timeout_millis=50))
    facade.send(_record("a"))

    store.release = threading.Event()
    closed_at_insert: list[int] = []
    store.on_insert = lambda: closed_at_insert.append(store.close_calls)
    flusher = threading.Thread(target=facade.flush)
    flusher.start()
    assert store.insert_started.wait(5)

    with caplog.at_level(logging.WARNING, logger="ingest.facade"):
        facade.stop()

    assert "Timed out waiting for in-flight flush; closing anyway" in caplog.text
    assert store.close_calls == 1

    store.release.set()
    flusher.join(5)
    assert closed_at_insert == [1]


def test_stop_waits_for_send_blocked_in_reconnect(store) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config(batch_size=10))
    assert facade.guard is not None
    facade.guard.mark_disconnected()
    store.connect_started.clear()
    store.connect_gate = threading.Event()

    closed_at_insert: list[int] = []
    store.on_insert = lambda: closed_at_insert.append(store.close_calls)
    results: list[int | None] = []
    sender = threading.Thread(target=lambda: results.append(facade.send(_record("a"))))
    sender.start()
    assert store.connect_started.wait(5)

    stopper = threading.Thread(target=facade.stop)
    stopper.start()
    _wait_until(lambda: not facade.running)

    store.connect_gate.set()
    sender.join(5)
    stopper.join(5)

    (key,) = results
    assert key is not None
    assert [d["fingerprint"] for _, documents in store.inserts for d in documents] == [key]
    assert closed_at_insert == [0]
    assert store.close_calls == 1
    assert facade.buffered == 0


def test_send_abandoned_by_stop_is_dropped_and_counted(store, caplog: pytest.LogCaptureFixture) -> None:
    facade = IngestFacade(store, collection="measurements")
    facade.start(_config(batch_size=10, stop_timeout_millis=50))
    assert facade.guard is not None
    facade.guard.mark_disconnected()
    store.connect_started.clear()
    store.connect_gate = threading.Event()

    results: list[int | None] = []
    sender = threading.Thread(target=lambda: results.append(facade.send(_record("a"))))
    sender.start()
    assert store.connect_started.wait(5)

    with caplog.at_level(logging.WARNING, logger="ingest.facade"):
        stopper = threading.Thread(target=facade.stop)
        stopper.start()
        _wait_until(lambda: "in-flight send(s); closing anyway" in caplog.text)
        store.connect_gate.set()
        sender.join(5)
        stopper.join(5)

    assert results == [None]
    assert store.inserts == []
    assert store.close_calls == 1
    assert facade.buffered == 0
    assert facade.degraded_status()["rejected_disconnected"] == 1
