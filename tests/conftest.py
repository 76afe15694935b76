"""Shared pytest fixtures for diagnostic-store tests."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncGenerator, Callable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from types import TracebackType
from typing import TYPE_CHECKING, Any, Self

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from diagnostic_store.db import init_db
from diagnostic_store.errors import BackingStoreError, RecordNotFoundError, RecordTooLargeError
from diagnostic_store.fragments import FIELD_LABEL, FIELD_PAYLOAD, Fragment, fragment_fields
from diagnostic_store.records.base import DEFAULT_BULK_LIMIT, Record
from diagnostic_store.store import ChunkedBlobStore, size_kb

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

TABLE = "Diagnostic Details"
THRESHOLD = 92_160
BASE_TIME = datetime(2025, 1, 1, tzinfo=UTC)


class FakeRecordStore:
    """In-memory record store with Airtable's limits and failure injection."""

    bulk_limit = DEFAULT_BULK_LIMIT

    def __init__(self, *, max_field_bytes: int | None = 100_000) -> None:
        self.tables: dict[str, list[Record]] = {}
        self.max_field_bytes = max_field_bytes
        self.create_calls = 0
        self.destroy_calls: list[list[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        # Failure injection
        self.fail_create: Callable[[Mapping[str, Any]], bool] | None = None
        self.create_error: BaseException = BackingStoreError(
            "injected create failure", status_code=500
        )
        self.fail_select: BackingStoreError | None = None
        self.fail_destroy_on_call: int | None = None
        self._ids = itertools.count(1)
        self._ticks = itertools.count()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        return None

    async def create(self, table: str, fields: Mapping[str, Any]) -> Record:
        self.create_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            # Yield so concurrent writers actually overlap
            await asyncio.sleep(0)
            if self.fail_create is not None and self.fail_create(fields):
                raise self.create_error
            self._check_sizes(fields)
            return self._insert(table, dict(fields))
        finally:
            self.in_flight -= 1

    async def select(
        self,
        table: str,
        where: Mapping[str, str],
        *,
        sort: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        if self.fail_select is not None:
            raise self.fail_select
        rows = [
            r
            for r in self.tables.get(table, [])
            if all(str(r.fields.get(k)) == v for k, v in where.items())
        ]
        if sort:
            rows = sorted(rows, key=lambda r: str(r.fields.get(sort, "")))
        return [
            Record(
                id=r.id,
                fields={k: v for k, v in r.fields.items() if fields is None or k in fields},
                created_time=r.created_time,
            )
            for r in rows
        ]

    async def update(self, table: str, record_id: str, fields: Mapping[str, Any]) -> Record:
        for record in self.tables.get(table, []):
            if record.id == record_id:
                record.fields = {**record.fields, **fields}
                return record
        raise RecordNotFoundError(f"{record_id} not found", status_code=404)

    async def destroy(self, table: str, record_ids: Sequence[str]) -> list[str]:
        if len(record_ids) > self.bulk_limit:
            raise ValueError(f"too many ids: {len(record_ids)}")
        self.destroy_calls.append(list(record_ids))
        if self.fail_destroy_on_call == len(self.destroy_calls):
            raise BackingStoreError("injected destroy failure", status_code=500)
        wanted = set(record_ids)
        rows = self.tables.get(table, [])
        removed = [r.id for r in rows if r.id in wanted]
        self.tables[table] = [r for r in rows if r.id not in wanted]
        return removed

    def add_fragment(
        self,
        owner_id: str,
        label: str,
        payload: str,
        *,
        created_at: datetime | None = None,
        table: str = TABLE,
    ) -> Record:
        """Insert a fragment record directly, bypassing the blob store."""
        created = created_at or BASE_TIME
        return self._insert(
            table, fragment_fields(owner_id, label, payload, size_kb(payload), created)
        )

    def labels(self, table: str = TABLE) -> list[str]:
        return [r.fields[FIELD_LABEL] for r in self.tables.get(table, [])]

    def payloads(self, table: str = TABLE) -> list[str]:
        return [r.fields.get(FIELD_PAYLOAD, "") for r in self.tables.get(table, [])]

    def _insert(self, table: str, fields: dict[str, Any]) -> Record:
        record = Record(
            id=f"rec{next(self._ids):05d}",
            fields=fields,
            created_time=BASE_TIME + timedelta(seconds=next(self._ticks)),
        )
        self.tables.setdefault(table, []).append(record)
        return record

    def _check_sizes(self, fields: Mapping[str, Any]) -> None:
        if self.max_field_bytes is None:
            return
        for name, value in fields.items():
            if isinstance(value, str) and len(value.encode("utf-8")) > self.max_field_bytes:
                raise RecordTooLargeError(f"{name} too large", status_code=422)


@pytest.fixture
def fake_records() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def blob_store(fake_records: FakeRecordStore) -> ChunkedBlobStore:
    return ChunkedBlobStore(
        fake_records,
        table=TABLE,
        threshold_bytes=THRESHOLD,
        delete_batch_size=10,
        write_concurrency=5,
        strict=False,
    )


@pytest.fixture
async def sql_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine shared across connections, tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)

    yield engine

    await engine.dispose()


# Type alias for factory fixture
MakeFragment = Callable[..., Fragment]


@pytest.fixture
def make_fragment() -> MakeFragment:
    """Factory fixture for creating Fragment instances."""
    ids = itertools.count(1)

    def _make(
        label: str,
        payload: str = "",
        *,
        owner_id: str = "run-1",
        storage_id: str | None = None,
        created_at: datetime | None = None,
        size_kb: float | None = None,
    ) -> Fragment:
        return Fragment(
            storage_id=storage_id or f"rec{next(ids):05d}",
            owner_id=owner_id,
            label=label,
            payload=payload,
            size_kb=size_kb if size_kb is not None else round(len(payload.encode()) / 1024, 2),
            created_at=created_at,
        )

    return _make
