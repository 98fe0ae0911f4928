"""Remote document store over an HTTP "Data API".

Batches are sent as one `insertMany` action:

    POST {base_url}/action/insertMany
    api-key: <key>
    {"dataSource": ..., "database": ..., "collection": ..., "documents": [...]}

Timestamps are encoded as extended JSON (`{"$date": "<iso-8601>"}`) so the
server stores them as dates rather than strings.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timezone
from typing import Any, Final

import requests  # type: ignore

from ingest.errors import WriteError

# (connect, read) timeouts in seconds.
DEFAULT_TIMEOUT: Final[tuple[float, float]] = (10.0, 25.0)


def _encode_value(value: Any) -> Any:
    """Extended-JSON fallback for values `json` cannot encode natively."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        iso = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
        return {"$date": iso.replace("+00:00", "Z")}
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


class DataApiHttpError(WriteError):
    """Non-2xx response returned by the Data API."""

    def __init__(self, *, status_code: int, payload: Any, collection: str, batch_size: int) -> None:
        """Create an error capturing HTTP status code and parsed payload (if any)."""
        self.status_code = status_code
        self.payload = payload
        super().__init__(
            f"Data API HTTP {status_code}: {payload}", collection=collection, batch_size=batch_size
        )


class DataApiDocumentStore:
    """Writes batches to a remote collection through the Data API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        database: str,
        data_source: str = "Cluster0",
        timeout: tuple[float, float] = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.database = database
        self.data_source = data_source
        self.timeout = timeout
        self._api_key = api_key
        self._lock = threading.Lock()
        self._session: requests.Session | None = None

    def connect(self) -> None:
        """Open an HTTP session and check the endpoint is reachable."""
        session = requests.Session()
        session.headers.update({"api-key": self._api_key, "Content-Type": "application/json"})
        try:
            resp = session.get(self.base_url, timeout=self.timeout)
        except requests.RequestException as exc:
            session.close()
            raise ConnectionError(f"Data API unreachable at {self.base_url}: {exc}") from exc
        if resp.status_code >= 500:
            session.close()
            raise ConnectionError(f"Data API unavailable at {self.base_url}: HTTP {resp.status_code}")

        with self._lock:
            previous, self._session = self._session, session
        if previous is not None:
            previous.close()

    def bulk_insert(self, collection: str, documents: Sequence[Mapping[str, Any]]) -> None:
        """Send one `insertMany` action for the batch."""
        with self._lock:
            session = self._session
        if session is None:
            raise ConnectionError("Data API store is not connected")

        body = {
            "dataSource": self.data_source,
            "database": self.database,
            "collection": collection,
            "documents": list(documents),
        }
        try:
            resp = session.post(
                f"{self.base_url}/action/insertMany",
                data=json.dumps(body, default=_encode_value),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ConnectionError(f"Data API request failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            error_payload: Any
            try:
                error_payload = resp.json()
            except ValueError:
                error_payload = resp.text
            raise DataApiHttpError(
                status_code=resp.status_code, payload=error_payload, collection=collection, batch_size=len(body["documents"])
            )

    def close(self) -> None:
        with self._lock:
            session, self._session = self._session, None
        if session is not None:
            session.close()
