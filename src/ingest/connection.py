"""Store connection ownership with retry/backoff.

`ConnectionGuard` is the only component that changes the connection state.
The buffer and scheduler just observe it; reconnects are driven from the
ingest path (`ensure_connected`) and never from a flush.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import ConnectionExhausted, WriteError

if TYPE_CHECKING:
    from store.base import DocumentStore

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionGuard:
    """Owns the document store handle and its connection state."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ) -> None:
        """Create a guard around a store.

        Args:
            store: Backing document store.
            max_attempts: Default attempt count used by `ensure_connected`.
            base_delay: Default initial backoff delay in seconds.
            max_delay: Upper bound for a single backoff delay in seconds.
        """
        if max_attempts <= 0:
            raise ValueError(f"max_attempts must be > 0. Got: {max_attempts}")
        self._store = store
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._state = ConnectionState.DISCONNECTED
        self._handle_open = False
        self._state_lock = threading.Lock()
        # Serializes whole attempt sequences so concurrent senders don't each run one.
        self._connect_lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            self._state = state

    def connect(self, max_attempts: int | None = None, base_delay: float | None = None) -> None:
        """Connect with exponential backoff.

        Waits `base_delay * 2**attempt` seconds (capped at `max_delay`) between
        failed attempts.

        Raises:
            ConnectionExhausted: when every attempt failed; state is left
                `DISCONNECTED`.
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        delay_base = self.base_delay if base_delay is None else base_delay
        if attempts <= 0:
            raise ValueError(f"max_attempts must be > 0. Got: {attempts}")

        with self._connect_lock:
            if self.is_connected:
                return
            self._set_state(ConnectionState.CONNECTING)
            last_error: BaseException | None = None
            for attempt in range(attempts):
                try:
                    self._store.connect()
                except ConnectionError as exc:
                    last_error = exc
                    logger.error("Failed to connect to document store on attempt %d: %s", attempt + 1, exc)
                    if attempt < attempts - 1:
                        delay = min(delay_base * (2**attempt), self.max_delay)
                        logger.debug("Retrying connection in %.3fs", delay)
                        time.sleep(delay)
                    continue
                except Exception:
                    self._set_state(ConnectionState.DISCONNECTED)
                    raise

                with self._state_lock:
                    self._state = ConnectionState.CONNECTED
                    self._handle_open = True
                logger.info("Connected to document store on attempt %d", attempt + 1)
                return

            self._set_state(ConnectionState.DISCONNECTED)
            logger.error("All %d document store connection attempts failed", attempts)
            raise ConnectionExhausted(attempts=attempts, last_error=last_error)

    def ensure_connected(self) -> None:
        """Connect with the default parameters unless already connected.

        Raises:
            ConnectionExhausted: see `connect`.
        """
        if self.is_connected:
            return
        logger.warning("Document store not connected; attempting to reconnect")
        self.connect()

    def mark_disconnected(self) -> None:
        """Record that the connection was lost; the next `send` reconnects."""
        with self._state_lock:
            if self._state is ConnectionState.CONNECTED:
                logger.warning("Document store connection marked as lost")
            self._state = ConnectionState.DISCONNECTED

    def insert_batch(self, collection: str, documents: Sequence[Mapping[str, Any]]) -> None:
        """Write one batch through the store.

        Raises:
            WriteError: the store failed the batch, or the connection was lost
                (in which case the guard is also marked disconnected).
        """
        if not self.is_connected:
            raise WriteError(
                "document store is not connected", collection=collection, batch_size=len(documents)
            )
        try:
            self._store.bulk_insert(collection, documents)
        except ConnectionError as exc:
            self.mark_disconnected()
            raise WriteError(
                f"connection lost during bulk insert: {exc}", collection=collection, batch_size=len(documents)
            ) from exc

    def close(self) -> None:
        """Release the store handle. Safe to call multiple times."""
        with self._connect_lock:
            with self._state_lock:
                handle_open = self._handle_open
                self._handle_open = False
                self._state = ConnectionState.DISCONNECTED
            if handle_open:
                self._store.close()
                logger.info("Document store connection closed")
