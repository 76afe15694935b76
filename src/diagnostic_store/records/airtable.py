"""Async Airtable REST client implementing the RecordStore protocol."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from datetime import datetime
from types import TracebackType
from typing import Any, NoReturn, Self
from urllib.parse import quote

import httpx

from diagnostic_store.config import settings
from diagnostic_store.errors import (
    AuthorizationError,
    BackingStoreError,
    ConfigurationError,
    RateLimitedError,
    RecordNotFoundError,
)
from diagnostic_store.records.base import DEFAULT_BULK_LIMIT, Record

logger = logging.getLogger(__name__)

# Airtable's maximum page size for list requests
PAGE_SIZE = 100


def escape_formula_value(value: str) -> str:
    """Quote a string for use inside an Airtable formula."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def build_filter_formula(where: Mapping[str, str]) -> str | None:
    """Render an equality filter as an Airtable ``filterByFormula`` expression."""
    clauses = [f"{{{name}}} = {escape_formula_value(value)}" for name, value in where.items()]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return f"AND({', '.join(clauses)})"


class AirtableRecordStore:
    """Record store backed by one Airtable base.

    Credentials default to the configured settings and are checked on the first
    request, not at construction, so importing and wiring the store never fails
    on a machine without Airtable access.

    No request is retried here. Rate limits surface as RateLimitedError and the
    caller decides whether the whole logical operation is worth repeating.
    """

    bulk_limit = DEFAULT_BULK_LIMIT

    def __init__(
        self,
        api_key: str | None = None,
        base_id: str | None = None,
        *,
        api_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        log_api_calls: bool | None = None,
    ) -> None:
        self._api_key = api_key or settings.airtable_api_key
        self._base_id = base_id or settings.airtable_base_id
        self._api_url = (api_url or settings.airtable_api_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.airtable_timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._log_api_calls = (
            settings.log_api_calls if log_api_calls is None else log_api_calls
        )
        # (base, table) pairs whose 403 has already been logged
        self._auth_errors_logged: set[tuple[str, str]] = set()

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
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def create(self, table: str, fields: Mapping[str, Any]) -> Record:
        data = await self._request("POST", table, json={"fields": dict(fields), "typecast": True})
        return self._to_record(data)

    async def select(
        self,
        table: str,
        where: Mapping[str, str],
        *,
        sort: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        base_params: list[tuple[str, str]] = [("pageSize", str(PAGE_SIZE))]
        formula = build_filter_formula(where)
        if formula:
            base_params.append(("filterByFormula", formula))
        if sort:
            base_params.append(("sort[0][field]", sort))
            base_params.append(("sort[0][direction]", "asc"))
        for name in fields or ():
            base_params.append(("fields[]", name))

        records: list[Record] = []
        offset: str | None = None
        while True:
            params = list(base_params)
            if offset:
                params.append(("offset", offset))
            data = await self._request("GET", table, params=params)
            records.extend(self._to_record(item) for item in data.get("records", []))
            offset = data.get("offset")
            if not offset:
                break
        return records

    async def update(self, table: str, record_id: str, fields: Mapping[str, Any]) -> Record:
        data = await self._request(
            "PATCH",
            table,
            record_id=record_id,
            json={"fields": dict(fields), "typecast": True},
        )
        return self._to_record(data)

    async def destroy(self, table: str, record_ids: Sequence[str]) -> list[str]:
        if not record_ids:
            return []
        if len(record_ids) > self.bulk_limit:
            raise ValueError(
                f"Airtable deletes at most {self.bulk_limit} records per request, "
                f"got {len(record_ids)}"
            )
        params = [("records[]", record_id) for record_id in record_ids]
        data = await self._request("DELETE", table, params=params)
        return [item["id"] for item in data.get("records", []) if item.get("deleted")]

    def _base_url(self) -> str:
        if not self._api_key or not self._base_id:
            raise ConfigurationError(
                "Airtable credentials not configured. Set AIRTABLE_API_KEY "
                "(or AIRTABLE_ACCESS_TOKEN) and AIRTABLE_BASE_ID (or AIRTABLE_OS_BASE_ID)."
            )
        return f"{self._api_url}/{self._base_id}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def _request(
        self,
        method: str,
        table: str,
        *,
        record_id: str | None = None,
        params: list[tuple[str, str]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url()}/{quote(table, safe='')}"
        if record_id:
            url = f"{url}/{record_id}"
        headers = {"Authorization": f"Bearer {self._api_key}"}

        start_time = time.time()
        try:
            response = await self._get_client().request(
                method, url, params=params, json=json, headers=headers
            )
        except httpx.TimeoutException as e:
            raise BackingStoreError(f"Airtable {method} {table} timed out") from e
        except httpx.HTTPError as e:
            raise BackingStoreError(f"Airtable {method} {table} failed: {e}") from e

        if self._log_api_calls:
            elapsed = (time.time() - start_time) * 1000  # ms
            logger.info(
                "[AIRTABLE] %s %s → %d (%.0fms)", method, table, response.status_code, elapsed
            )

        if response.is_success:
            try:
                payload = response.json()
            except ValueError as e:
                raise BackingStoreError(
                    f"Airtable {method} {table} returned invalid JSON",
                    status_code=response.status_code,
                ) from e
            if not isinstance(payload, dict):
                raise BackingStoreError(
                    f"Airtable {method} {table} returned an unexpected payload",
                    status_code=response.status_code,
                )
            return payload

        self._raise_for_status(response, method, table, record_id)

    def _raise_for_status(
        self,
        response: httpx.Response,
        method: str,
        table: str,
        record_id: str | None,
    ) -> NoReturn:
        status = response.status_code
        error_type, message = _error_details(response)
        detail = f"Airtable {method} {table} → {status} {error_type or ''}: {message}".strip()

        if status in (401, 403):
            key = (self._base_id or "", table)
            if key not in self._auth_errors_logged:
                self._auth_errors_logged.add(key)
                base_prefix = _prefix(self._base_id or "")
                logger.error(
                    '[AIRTABLE] NOT_AUTHORIZED: base=%s table="%s" status=%d error=%s',
                    base_prefix, table, status, error_type or "NOT_AUTHORIZED",
                )
            raise AuthorizationError(detail, status_code=status, error_type=error_type)
        if status == 404 and record_id:
            raise RecordNotFoundError(detail, status_code=status, error_type=error_type)
        if status == 429:
            raise RateLimitedError(detail, status_code=status, error_type=error_type)
        raise BackingStoreError(detail, status_code=status, error_type=error_type)

    @staticmethod
    def _to_record(data: Mapping[str, Any]) -> Record:
        try:
            created = data.get("createdTime")
            return Record(
                id=data["id"],
                fields=dict(data.get("fields") or {}),
                created_time=datetime.fromisoformat(created) if created else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise BackingStoreError(f"Malformed Airtable record: {data!r:.200}") from e


def _error_details(response: httpx.Response) -> tuple[str | None, str]:
    """Pull Airtable's error type and message out of a failed response.

    Airtable uses both ``{"error": {"type": ..., "message": ...}}`` and
    ``{"error": "NOT_FOUND"}`` shapes.
    """
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:200]

    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("type"), error.get("message", "")
    if isinstance(error, str):
        return error, body.get("message", error)
    return None, response.text[:200]


def _prefix(value: str, length: int = 20) -> str:
    return value if len(value) <= length else f"{value[:length]}..."
