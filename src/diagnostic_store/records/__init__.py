"""Backing record stores for the chunked blob store."""

from __future__ import annotations

from diagnostic_store.config import Settings, settings
from diagnostic_store.records.airtable import AirtableRecordStore
from diagnostic_store.records.base import DEFAULT_BULK_LIMIT, Record, RecordStore
from diagnostic_store.records.sql import SqlRecordStore


def create_record_store(config: Settings | None = None) -> RecordStore:
    """Build the record store selected by ``config.backend``.

    The caller owns the returned store and should close it (``aclose()`` or
    ``async with``) when done.
    """
    config = config or settings
    if config.backend == "sql":
        return SqlRecordStore(
            database_url=config.database_url,
            max_field_bytes=config.max_field_bytes,
        )
    return AirtableRecordStore(
        api_key=config.airtable_api_key,
        base_id=config.airtable_base_id,
        api_url=config.airtable_api_url,
        timeout=config.airtable_timeout_seconds,
        log_api_calls=config.log_api_calls,
    )


__all__ = [
    "DEFAULT_BULK_LIMIT",
    "AirtableRecordStore",
    "Record",
    "RecordStore",
    "SqlRecordStore",
    "create_record_store",
]
