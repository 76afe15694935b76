"""Configuration settings for diagnostic-store."""

from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Which record store backs the blob store
    backend: Literal["airtable", "sql"] = "airtable"

    # Airtable
    airtable_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("airtable_api_key", "airtable_access_token"),
    )
    # OS base id wins over the generic one when both are set
    airtable_base_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("airtable_os_base_id", "airtable_base_id"),
    )
    airtable_api_url: str = "https://api.airtable.com/v0"
    airtable_timeout_seconds: float = 30.0
    diagnostic_details_table: str = "Diagnostic Details"

    # SQL backend (local development and tests)
    database_url: str = "sqlite+aiosqlite:///./diagnostic_store.db"
    database_echo: bool = False
    # Per-field byte ceiling enforced by the SQL backend to mirror Airtable's cell limit
    max_field_bytes: int | None = 100_000

    # ── Chunking ─────────────────────────────────────────────────────────────
    # 90 KiB leaves headroom under the ~100 KB cell limit
    chunk_threshold_bytes: int = 92_160

    # Airtable accepts at most 10 record ids per bulk delete
    delete_batch_size: int = 10

    # Concurrent fragment writes per store() call (Airtable allows 5 req/s per base)
    write_concurrency: int = 5

    # Raise IncompleteBlobError on missing chunks instead of returning a short blob
    strict_reassembly: bool = False

    # Logging
    log_level: str = "INFO"
    log_api_calls: bool = False


settings = Settings()
