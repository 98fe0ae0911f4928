"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into strongly-typed Pydantic models.
- Validating required fields and providing actionable error messages.
"""

import os
from typing import Literal, TypeVar

import dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

_T = TypeVar("_T", int, float)

StoreBackend = Literal["duckdb", "data_api", "memory"]


def _get_required_env(name: str) -> str:
    """Read a required env var or raise a helpful error."""
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"{name} is required. Please set it in your .env file.")
    if value.startswith("your_") and value.endswith("_here"):
        raise ValueError(f"{name} is required. Please replace the placeholder value in your .env file.")
    return value


def _get_env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false). Got: {raw!r}")


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


class IngestConfig(BaseModel):
    """Tuning for the buffering engine (all durations in milliseconds)."""

    ttl_millis: int = Field(default=180_000, gt=0, description="Max time a record may stay buffered")
    batch_size: int = Field(default=100, gt=0, description="Records per bulk insert / size flush threshold")
    max_buffer: int = Field(default=1000, gt=0, description="Max records held in the buffer")
    flush_interval_millis: int = Field(default=60_000, ge=0, description="Periodic flush interval; 0 disables it")
    housekeeping_interval_millis: int = Field(default=30_000, gt=0, description="Housekeeping tick interval")

    connect_attempts: int = Field(default=5, gt=0, description="Connection attempts per connect sequence")
    connect_base_delay_millis: int = Field(default=1000, ge=0, description="Initial connect retry delay")
    connect_max_delay_millis: int = Field(default=30_000, ge=0, description="Cap for a single connect retry delay")

    requeue_failed_batches: bool = Field(default=True, description="Put failed batches back in the buffer")
    max_write_attempts: int = Field(default=3, gt=0, description="Failed writes a record survives before dropping")
    stop_timeout_millis: int = Field(default=25_000, ge=0, description="Max wait for an in-flight flush on stop")

    @model_validator(mode="after")
    def validate_delays(self) -> "IngestConfig":
        """Ensure the retry delay cap is not below the base delay."""
        if self.connect_max_delay_millis < self.connect_base_delay_millis:
            raise ValueError(
                "INGEST_CONNECT_MAX_DELAY_MILLIS must be >= INGEST_CONNECT_BASE_DELAY_MILLIS."
            )
        return self


class StoreConfig(BaseModel):
    """Where buffered records are written."""

    backend: StoreBackend = Field(default="duckdb", description="Store backend")
    uri: str = Field(..., description="DuckDB file path or Data API base URL")
    database: str = Field(..., description="Database name")
    collection: str = Field(..., description="Collection (table) name")
    api_key: str | None = Field(default=None, description="Data API key")
    data_source: str = Field(default="Cluster0", description="Data API data source (cluster) name")

    @field_validator("uri", "database", "collection")
    def validate_not_blank(cls, v: str) -> str:
        """Reject empty/whitespace-only values."""
        if not v or not v.strip():
            raise ValueError("value must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_backend_options(self) -> "StoreConfig":
        """Require an API key for the remote backend."""
        if self.backend == "data_api" and not self.api_key:
            raise ValueError("STORE_API_KEY is required when STORE_BACKEND=data_api.")
        return self


class Config(BaseModel):
    """Top-level application configuration."""

    ingest: IngestConfig = Field(default_factory=IngestConfig, description="Buffering engine configuration")
    store: StoreConfig = Field(..., description="Document store configuration")


def load_ingest_config() -> IngestConfig:
    """Read `INGEST_*` variables, falling back to the model defaults."""
    defaults = IngestConfig()
    return IngestConfig(
        ttl_millis=_get_env_number("INGEST_TTL_MILLIS", defaults.ttl_millis, int),
        batch_size=_get_env_number("INGEST_BATCH_SIZE", defaults.batch_size, int),
        max_buffer=_get_env_number("INGEST_MAX_BUFFER", defaults.max_buffer, int),
        flush_interval_millis=_get_env_number("INGEST_FLUSH_INTERVAL_MILLIS", defaults.flush_interval_millis, int),
        housekeeping_interval_millis=_get_env_number(
            "INGEST_HOUSEKEEPING_INTERVAL_MILLIS", defaults.housekeeping_interval_millis, int
        ),
        connect_attempts=_get_env_number("INGEST_CONNECT_ATTEMPTS", defaults.connect_attempts, int),
        connect_base_delay_millis=_get_env_number(
            "INGEST_CONNECT_BASE_DELAY_MILLIS", defaults.connect_base_delay_millis, int
        ),
        connect_max_delay_millis=_get_env_number(
            "INGEST_CONNECT_MAX_DELAY_MILLIS", defaults.connect_max_delay_millis, int
        ),
        requeue_failed_batches=_get_env_bool("INGEST_REQUEUE_FAILED_BATCHES", defaults.requeue_failed_batches),
        max_write_attempts=_get_env_number("INGEST_MAX_WRITE_ATTEMPTS", defaults.max_write_attempts, int),
        stop_timeout_millis=_get_env_number("INGEST_STOP_TIMEOUT_MILLIS", defaults.stop_timeout_millis, int),
    )


def load_config() -> Config:
    """Load application configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Raises `ValueError` with actionable messages when required configuration is
      missing or still contains placeholder values.
    """
    # Load variables from `.env` into the process environment (without overriding
    # already-set env vars).
    dotenv.load_dotenv()

    backend = os.getenv("STORE_BACKEND", "duckdb").strip().lower() or "duckdb"
    store = StoreConfig(
        backend=backend,
        uri=_get_required_env("STORE_URI"),
        database=_get_required_env("STORE_DATABASE"),
        collection=_get_required_env("STORE_COLLECTION"),
        api_key=os.getenv("STORE_API_KEY") or None,
        data_source=os.getenv("STORE_DATA_SOURCE", "Cluster0"),
    )
    return Config(ingest=load_ingest_config(), store=store)
