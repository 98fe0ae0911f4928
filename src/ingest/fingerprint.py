"""Record fingerprinting.

A fingerprint is a cheap, deterministic identity key derived from a record's
canonical payload. Two records whose canonical payloads are byte-identical get
the same key, which is how the buffer deduplicates re-delivered records.

The key is built from two independent 32-bit rolling hashes computed over the
canonical string scanned in reverse:

- primary: djb2-style `h * 33 + c`
- secondary: FNV-1a-style `(h ^ c) * 16777619`

Both are kept unsigned with an explicit 32-bit mask and combined as
`primary * 2**12 + secondary`. This is not a cryptographic digest.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Final

from .errors import SerializationError

# Keys assigned by the engine (or by the store) that never take part in identity.
NON_IDENTITY_FIELDS: Final[frozenset[str]] = frozenset({"expires_at", "fingerprint", "_id"})

_MASK32: Final[int] = 0xFFFFFFFF
_PRIMARY_SEED: Final[int] = 5381
_SECONDARY_SEED: Final[int] = 0x811C9DC5
_FNV_PRIME: Final[int] = 0x01000193
_COMBINE_SHIFT: Final[int] = 12


def _encode_value(value: Any) -> Any:
    """JSON fallback for the non-native types measurements commonly carry."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def identity_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return the payload without engine/store-assigned keys."""
    return {k: v for k, v in payload.items() if k not in NON_IDENTITY_FIELDS}


def canonicalize(payload: Mapping[str, Any]) -> str:
    """Serialize a payload to its canonical string form.

    Raises:
        SerializationError: if the payload is not a mapping, has non-string keys,
            or contains values that cannot be encoded.
    """
    if not isinstance(payload, Mapping):
        raise SerializationError(f"record must be a mapping, got {type(payload).__name__}")
    try:
        return json.dumps(
            identity_payload(payload),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
            default=_encode_value,
        )
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"record cannot be serialized: {exc}") from exc


def hash_text(text: str) -> int:
    """Compute the combined two-hash key for an already canonical string."""
    primary = _PRIMARY_SEED
    secondary = _SECONDARY_SEED
    for ch in reversed(text):
        code = ord(ch)
        primary = ((primary << 5) + primary + code) & _MASK32
        secondary = ((secondary ^ code) * _FNV_PRIME) & _MASK32
    return (primary << _COMBINE_SHIFT) + secondary


def fingerprint(payload: Mapping[str, Any]) -> int:
    """Return the identity key for a record payload."""
    return hash_text(canonicalize(payload))
