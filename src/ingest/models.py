"""Staged record model.

A staged record is an application payload plus the fields the engine assigns
when the record enters the buffer:

- `observed_at`: the producer's `observed_at` value when present, otherwise the
  arrival time.
- `expires_at`: arrival time + TTL; governs buffer residency only.
- `fingerprint`: identity key over the payload (see `ingest.fingerprint`).
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import SerializationError
from .fingerprint import fingerprint, identity_payload


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(tz=timezone.utc)


class StagedRecord(BaseModel):
    """A record held in the ingest buffer, immutable once staged."""

    model_config = ConfigDict(frozen=True)

    payload: dict[str, Any]
    observed_at: datetime
    expires_at: datetime
    fingerprint: int

    # Failed write attempts survived so far (bounded requeue).
    attempts: int = Field(default=0, ge=0)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def with_failed_attempt(self) -> StagedRecord:
        return self.model_copy(update={"attempts": self.attempts + 1})

    def to_document(self) -> dict[str, Any]:
        """Return the document written to the store."""
        document = dict(self.payload)
        document["observed_at"] = self.observed_at
        document["expires_at"] = self.expires_at
        document["fingerprint"] = self.fingerprint
        return document


def prepare_record(record: Mapping[str, Any], *, ttl: timedelta, now: datetime) -> StagedRecord:
    """Fingerprint a raw record and assign its engine fields.

    The fingerprint is computed before any timestamp is assigned, so a record
    without a producer timestamp dedups against identical re-deliveries.

    Raises:
        SerializationError: if the record cannot be canonicalized or its
            `observed_at` value is not a timestamp.
    """
    key = fingerprint(record)
    payload = identity_payload(record)
    observed_at = payload.get("observed_at")
    try:
        return StagedRecord(
            payload=payload,
            observed_at=now if observed_at is None else observed_at,
            expires_at=now + ttl,
            fingerprint=key,
        )
    except ValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in error["loc"])
        raise SerializationError(f"record rejected ({location}): {error['msg']}") from exc
