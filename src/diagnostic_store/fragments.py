"""Typed fragment and blob records, and their mapping to record-store fields.

Field names of the Diagnostic Details table are confined to this module.
Everything above it works with Fragment and Blob.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from diagnostic_store.records.base import Record

# Diagnostic Details table columns
FIELD_OWNER_ID = "Run ID"
FIELD_LABEL = "Data Type"
FIELD_PAYLOAD = "JSON Data"
FIELD_SIZE_KB = "Size KB"
FIELD_CREATED_AT = "Created At"


@dataclass(frozen=True)
class Fragment:
    """One stored record: a whole blob or one numbered chunk of a blob."""

    storage_id: str
    owner_id: str
    label: str
    payload: str
    size_kb: float
    created_at: datetime | None = None


@dataclass(frozen=True)
class Blob:
    """A reassembled blob for one data type."""

    data_type: str
    content: str
    size_kb: float


def fragment_fields(
    owner_id: str,
    label: str,
    payload: str,
    size_kb: float,
    created_at: datetime,
) -> dict[str, Any]:
    """Fields for writing a fragment to the record store."""
    return {
        FIELD_OWNER_ID: owner_id,
        FIELD_LABEL: label,
        FIELD_PAYLOAD: payload,
        FIELD_SIZE_KB: size_kb,
        FIELD_CREATED_AT: created_at.isoformat(),
    }


def fragment_from_record(record: Record) -> Fragment:
    """Build a Fragment from a record, tolerating blank cells.

    Airtable omits empty fields from responses entirely, so an empty payload
    comes back as a missing key. ``Created At`` falls back to the record's own
    creation time.
    """
    fields = record.fields
    created_at = _parse_datetime(fields.get(FIELD_CREATED_AT)) or record.created_time
    if created_at is not None and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return Fragment(
        storage_id=record.id,
        owner_id=str(fields.get(FIELD_OWNER_ID, "")),
        label=str(fields.get(FIELD_LABEL, "")),
        payload=str(fields.get(FIELD_PAYLOAD) or ""),
        size_kb=float(fields.get(FIELD_SIZE_KB) or 0.0),
        created_at=created_at,
    )


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None
