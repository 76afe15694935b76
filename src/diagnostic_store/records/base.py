"""Record store protocol shared by the Airtable and SQL backends."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from types import TracebackType
from typing import Any, Protocol, Self

# Airtable caps bulk create/update/delete at 10 records per request
DEFAULT_BULK_LIMIT = 10


@dataclass
class Record:
    """A record as the backing store returns it: id, loosely-typed fields, creation time."""

    id: str
    fields: dict[str, Any] = field(default_factory=dict)
    created_time: datetime | None = None


class RecordStore(Protocol):
    """Minimal CRUD surface of a table-oriented record store.

    ``where`` is an equality filter over field values. ``sort`` names a field
    to order by ascending. ``fields`` limits which fields are returned.
    """

    bulk_limit: int

    async def create(self, table: str, fields: Mapping[str, Any]) -> Record: ...

    async def select(
        self,
        table: str,
        where: Mapping[str, str],
        *,
        sort: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> list[Record]: ...

    async def update(self, table: str, record_id: str, fields: Mapping[str, Any]) -> Record: ...

    async def destroy(self, table: str, record_ids: Sequence[str]) -> list[str]: ...

    async def aclose(self) -> None: ...

    async def __aenter__(self) -> Self: ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...
