"""SQL implementation of the RecordStore protocol.

Mirrors the parts of Airtable's behaviour the blob store depends on: a
per-cell byte ceiling, a bulk-delete cardinality limit and server-assigned
ids and creation times. Used for local development and tests.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from types import TracebackType
from typing import Any, Self
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from diagnostic_store.config import settings
from diagnostic_store.db import create_engine, create_session_factory, init_db
from diagnostic_store.errors import BackingStoreError, RecordNotFoundError, RecordTooLargeError
from diagnostic_store.models import RecordRow
from diagnostic_store.records.base import DEFAULT_BULK_LIMIT, Record

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def new_record_id() -> str:
    """Airtable-shaped record id: ``rec`` plus 14 hex characters."""
    return f"rec{uuid4().hex[:14]}"


class SqlRecordStore:
    """Record store on any async SQLAlchemy database.

    Usage:
        async with SqlRecordStore(database_url="sqlite+aiosqlite://") as records:
            await records.init()
            await records.create("Diagnostic Details", {...})
    """

    bulk_limit = DEFAULT_BULK_LIMIT

    def __init__(
        self,
        engine: AsyncEngine | None = None,
        *,
        database_url: str | None = None,
        max_field_bytes: int | None = _UNSET,
    ) -> None:
        self._owns_engine = engine is None
        self._engine = engine or create_engine(database_url)
        self._session_factory = create_session_factory(self._engine)
        self._max_field_bytes = (
            settings.max_field_bytes if max_field_bytes is _UNSET else max_field_bytes
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def init(self) -> None:
        """Create the records table if it does not exist."""
        await init_db(self._engine)

    async def aclose(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()

    async def create(self, table: str, fields: Mapping[str, Any]) -> Record:
        self._check_field_sizes(table, fields)
        row = RecordRow(
            record_id=new_record_id(),
            table_name=table,
            fields=dict(fields),
            created_at=datetime.now(UTC),
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()
        return self._to_record(row)

    async def select(
        self,
        table: str,
        where: Mapping[str, str],
        *,
        sort: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        stmt = select(RecordRow).where(RecordRow.table_name == table)
        for name, value in where.items():
            stmt = stmt.where(RecordRow.fields[name].as_string() == value)
        if sort:
            stmt = stmt.order_by(RecordRow.fields[sort].as_string(), RecordRow.created_at)
        else:
            stmt = stmt.order_by(RecordRow.created_at)

        async with self._session() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        records = [self._to_record(row) for row in rows]
        if fields is not None:
            wanted = set(fields)
            for record in records:
                record.fields = {k: v for k, v in record.fields.items() if k in wanted}
        return records

    async def update(self, table: str, record_id: str, fields: Mapping[str, Any]) -> Record:
        self._check_field_sizes(table, fields)
        async with self._session() as session:
            row = await session.get(RecordRow, record_id)
            if row is None or row.table_name != table:
                raise RecordNotFoundError(
                    f"Record {record_id} not found in {table}",
                    status_code=404,
                    error_type="NOT_FOUND",
                )
            # Reassign so the JSON column is flagged dirty
            row.fields = {**row.fields, **fields}
            await session.commit()
        return self._to_record(row)

    async def destroy(self, table: str, record_ids: Sequence[str]) -> list[str]:
        if not record_ids:
            return []
        if len(record_ids) > self.bulk_limit:
            raise ValueError(
                f"Bulk delete is limited to {self.bulk_limit} records, got {len(record_ids)}"
            )
        async with self._session() as session:
            result = await session.execute(
                select(RecordRow.record_id).where(
                    RecordRow.table_name == table,
                    RecordRow.record_id.in_(list(record_ids)),
                )
            )
            found = set(result.scalars().all())
            await session.execute(
                delete(RecordRow).where(
                    RecordRow.table_name == table,
                    RecordRow.record_id.in_(list(found)),
                )
            )
            await session.commit()
        return [record_id for record_id in record_ids if record_id in found]

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("[SQL] Record store query failed: %s", e)
            raise BackingStoreError(f"Database error: {e}") from e

    def _check_field_sizes(self, table: str, fields: Mapping[str, Any]) -> None:
        if self._max_field_bytes is None:
            return
        for name, value in fields.items():
            if isinstance(value, str):
                size = len(value.encode("utf-8"))
                if size > self._max_field_bytes:
                    raise RecordTooLargeError(
                        f"Field '{name}' in {table} is {size} bytes, "
                        f"limit is {self._max_field_bytes}",
                        status_code=422,
                        error_type="INVALID_VALUE_FOR_COLUMN",
                    )

    @staticmethod
    def _to_record(row: RecordRow) -> Record:
        created = row.created_at
        # SQLite hands timestamps back naive
        if created is not None and created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        return Record(id=row.record_id, fields=dict(row.fields or {}), created_time=created)
