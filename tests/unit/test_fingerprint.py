from __future__ import annotations

import math
from datetime import datetime, timezone

import pytest

from ingest.errors import SerializationError
from ingest.fingerprint import canonicalize, fingerprint, hash_text


def test_empty_string_hash_is_the_combined_seeds() -> None:
    assert hash_text("") == (5381 << 12) + 0x811C9DC5


def test_single_character_hash() -> None:
    # djb2 step over "a" and the well-known FNV-1a 32-bit digest of "a".
    assert hash_text("a") == ((5381 * 33 + 97) << 12) + 0xE40C292C


def test_hash_is_order_sensitive() -> None:
    assert hash_text("ab") != hash_text("ba")


def test_hash_halves_are_unsigned_32_bit() -> None:
    key = hash_text("navigation.speedOverGround" * 50)
    assert 0 <= key <= (0xFFFFFFFF << 12) + 0xFFFFFFFF


def test_key_order_does_not_change_fingerprint() -> None:
    a = {"path": "navigation.speedOverGround", "value": 4.2, "source": "gps"}
    b = {"source": "gps", "value": 4.2, "path": "navigation.speedOverGround"}
    assert canonicalize(a) == canonicalize(b)
    assert fingerprint(a) == fingerprint(b)


def test_value_change_changes_fingerprint() -> None:
    a = {"path": "navigation.speedOverGround", "value": 4.2}
    b = {"path": "navigation.speedOverGround", "value": 4.3}
    assert fingerprint(a) != fingerprint(b)


def test_engine_and_store_fields_are_ignored() -> None:
    payload = {"path": "environment.wind.speedApparent", "value": 7}
    redelivered = dict(payload, expires_at="2024-01-01T00:00:00Z", fingerprint=123, _id="abc")
    assert fingerprint(payload) == fingerprint(redelivered)


def test_producer_timestamp_is_part_of_identity() -> None:
    base = {"path": "navigation.position", "value": 1}
    first = dict(base, observed_at="2024-06-01T12:00:00Z")
    second = dict(base, observed_at="2024-06-01T12:00:01Z")
    assert fingerprint(first) != fingerprint(second)


def test_datetimes_serialize_as_iso_strings() -> None:
    ts = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert canonicalize({"observed_at": ts}) == '{"observed_at":"2024-06-01T12:00:00+00:00"}'
    assert fingerprint({"observed_at": ts}) == fingerprint({"observed_at": ts.isoformat()})


def test_canonical_form_is_compact_and_sorted() -> None:
    assert canonicalize({"b": 1, "a": [1, 2], "c": "é"}) == '{"a":[1,2],"b":1,"c":"é"}'


@pytest.mark.parametrize(
    "record",
    [
        ["not", "a", "mapping"],
        {"value": object()},
        {"value": math.nan},
    ],
)
def test_unserializable_records_raise(record: object) -> None:
    with pytest.raises(SerializationError):
        fingerprint(record)  # type: ignore[arg-type]


def test_circular_record_raises() -> None:
    record: dict[str, object] = {"path": "x"}
    record["self"] = record
    with pytest.raises(SerializationError):
        fingerprint(record)
