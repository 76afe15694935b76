"""Tests for the FastAPI application."""

from collections.abc import AsyncIterator

import pytest
from conftest import TABLE, FakeRecordStore
from httpx import ASGITransport, AsyncClient

from diagnostic_store import __version__
from diagnostic_store.app import app, get_blob_store
from diagnostic_store.errors import BackingStoreError, RateLimitedError
from diagnostic_store.store import ChunkedBlobStore


@pytest.fixture
async def client(blob_store: ChunkedBlobStore) -> AsyncIterator[AsyncClient]:
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def test_health() -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": __version__}


async def test_put_then_get(client: AsyncClient, fake_records: FakeRecordStore) -> None:
    content = '{"modules": "' + "x" * 200_000 + '"}'

    put = await client.put("/runs/run-1/details/modules", content=content.encode("utf-8"))
    got = await client.get("/runs/run-1/details/modules")

    assert put.status_code == 201
    assert put.json()["owner_id"] == "run-1"
    assert len(put.json()["fragment_ids"]) == 3
    assert len(fake_records.labels()) == 3
    assert got.status_code == 200
    assert got.json()["data_type"] == "modules"
    assert got.json()["content"] == content


async def test_get_raw_returns_content_verbatim(client: AsyncClient) -> None:
    content = '{"name": "Zoë", "price": "€5"}'
    await client.put("/runs/run-1/details/websiteLabV4", content=content.encode("utf-8"))

    response = await client.get("/runs/run-1/details/websiteLabV4/raw")

    assert response.status_code == 200
    assert response.text == content


async def test_get_missing_detail_is_404(client: AsyncClient) -> None:
    response = await client.get("/runs/run-1/details/modules")
    raw = await client.get("/runs/run-1/details/modules/raw")

    assert response.status_code == 404
    assert "modules" in response.json()["detail"]
    assert raw.status_code == 404


async def test_list_details(client: AsyncClient) -> None:
    await client.put("/runs/run-1/details/modules", content=b"[1, 2, 3]")
    await client.put("/runs/run-1/details/websiteLabV4", content=b"{}")

    response = await client.get("/runs/run-1/details")

    assert response.status_code == 200
    assert {d["data_type"]: d["content"] for d in response.json()} == {
        "modules": "[1, 2, 3]",
        "websiteLabV4": "{}",
    }


async def test_delete_details(client: AsyncClient, fake_records: FakeRecordStore) -> None:
    await client.put("/runs/run-1/details/modules", content=b"x" * 100_000)
    await client.put("/runs/run-2/details/modules", content=b"keep")

    response = await client.delete("/runs/run-1/details")

    assert response.status_code == 204
    assert (await client.get("/runs/run-1/details")).json() == []
    assert fake_records.labels() == ["modules"]


async def test_inspect(client: AsyncClient, fake_records: FakeRecordStore) -> None:
    fake_records.add_fragment("run-1", "modules_chunk_1_of_3", "a")
    fake_records.add_fragment("run-1", "modules_chunk_3_of_3", "c")

    response = await client.get("/runs/run-1/inspect")

    assert response.status_code == 200
    (report,) = response.json()
    assert report["data_type"] == "modules"
    assert report["expected"] == 3
    assert report["missing"] == [2]
    assert report["complete"] is False


async def test_incomplete_blob_in_strict_mode_is_409(fake_records: FakeRecordStore) -> None:
    strict_store = ChunkedBlobStore(fake_records, table=TABLE, strict=True)
    fake_records.add_fragment("run-1", "modules_chunk_2_of_2", "b")
    app.dependency_overrides[get_blob_store] = lambda: strict_store
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/runs/run-1/details/modules")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 409
    assert response.json()["missing"] == [1]


async def test_backing_store_error_is_502(
    client: AsyncClient, fake_records: FakeRecordStore
) -> None:
    fake_records.fail_select = BackingStoreError(
        "Airtable GET failed", status_code=500, error_type="SERVER_ERROR"
    )

    response = await client.get("/runs/run-1/details")

    assert response.status_code == 502
    assert response.json()["error_type"] == "SERVER_ERROR"


async def test_rate_limit_is_503(client: AsyncClient, fake_records: FakeRecordStore) -> None:
    fake_records.fail_select = RateLimitedError("slow down", status_code=429)

    response = await client.get("/runs/run-1/details")

    assert response.status_code == 503


async def test_invalid_utf8_body_is_422(client: AsyncClient) -> None:
    response = await client.put("/runs/run-1/details/modules", content=b"\xff\xfe\xfa")

    assert response.status_code == 422
