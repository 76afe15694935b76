"""Generic record model backing the SQL record store."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from diagnostic_store.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RecordRow(Base):
    """One record of a named table, stored the way Airtable shapes it.

    Field values live in a single JSON column so any table layout fits.
    ``created_at`` is set client-side with microsecond precision so duplicate
    fragments written within one second still order correctly.
    """

    __tablename__ = "records"

    record_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(255), index=True)
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
