"""FastAPI application for diagnostic-store."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from diagnostic_store import __version__
from diagnostic_store.config import settings
from diagnostic_store.errors import (
    BackingStoreError,
    ConfigurationError,
    IncompleteBlobError,
    RateLimitedError,
)
from diagnostic_store.records import SqlRecordStore, create_record_store
from diagnostic_store.store import ChunkedBlobStore


class BlobOut(BaseModel):
    data_type: str
    content: str
    size_kb: float


class StoredOut(BaseModel):
    owner_id: str
    data_type: str
    fragment_ids: list[str]


class ChunkSetReportOut(BaseModel):
    data_type: str
    fragment_count: int
    whole_blob: bool
    expected: int | None
    present: list[int]
    missing: list[int]
    duplicate_labels: list[str]
    stale_whole_blobs: int
    complete: bool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the record store for the lifetime of the process."""
    records = create_record_store(settings)
    if isinstance(records, SqlRecordStore):
        await records.init()
    app.state.blob_store = ChunkedBlobStore(records)
    try:
        yield
    finally:
        await records.aclose()


app = FastAPI(
    title="diagnostic-store",
    description="Chunked storage for oversized diagnostic run payloads",
    version=__version__,
    lifespan=lifespan,
)


def get_blob_store(request: Request) -> ChunkedBlobStore:
    return request.app.state.blob_store


BlobStoreDep = Annotated[ChunkedBlobStore, Depends(get_blob_store)]


@app.exception_handler(IncompleteBlobError)
async def incomplete_blob_handler(request: Request, exc: IncompleteBlobError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "data_type": exc.data_type, "missing": exc.missing},
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(BackingStoreError)
async def backing_store_error_handler(request: Request, exc: BackingStoreError) -> JSONResponse:
    # Rate limits are transient, everything else is an upstream failure
    status_code = 503 if isinstance(exc, RateLimitedError) else 502
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": exc.error_type},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@app.get("/runs/{owner_id}/details")
async def list_details(owner_id: str, store: BlobStoreDep) -> list[BlobOut]:
    blobs = await store.fetch_all(owner_id)
    return [BlobOut(data_type=b.data_type, content=b.content, size_kb=b.size_kb) for b in blobs]


@app.get("/runs/{owner_id}/details/{data_type}", response_model=None)
async def get_detail(
    owner_id: str, data_type: str, store: BlobStoreDep
) -> BlobOut | JSONResponse:
    blob = await store.fetch_one(owner_id, data_type)
    if blob is None:
        return JSONResponse(
            status_code=404,
            content={"detail": f"No '{data_type}' detail for run {owner_id}"},
        )
    return BlobOut(data_type=blob.data_type, content=blob.content, size_kb=blob.size_kb)


@app.get("/runs/{owner_id}/details/{data_type}/raw", response_class=PlainTextResponse)
async def get_detail_raw(owner_id: str, data_type: str, store: BlobStoreDep) -> Response:
    """The reassembled content exactly as stored."""
    blob = await store.fetch_one(owner_id, data_type)
    if blob is None:
        return PlainTextResponse(f"No '{data_type}' detail for run {owner_id}", status_code=404)
    return PlainTextResponse(blob.content)


@app.put("/runs/{owner_id}/details/{data_type}", status_code=201)
async def put_detail(
    owner_id: str,
    data_type: str,
    request: Request,
    store: BlobStoreDep,
) -> StoredOut:
    """Store the raw request body (UTF-8 text) as the detail payload."""
    content = (await request.body()).decode("utf-8")
    ids = await store.store(owner_id, data_type, content)
    return StoredOut(owner_id=owner_id, data_type=data_type, fragment_ids=ids)


@app.delete("/runs/{owner_id}/details", status_code=204)
async def delete_details(owner_id: str, store: BlobStoreDep) -> Response:
    await store.delete_all(owner_id)
    return Response(status_code=204)


@app.get("/runs/{owner_id}/inspect")
async def inspect_details(owner_id: str, store: BlobStoreDep) -> list[ChunkSetReportOut]:
    reports = await store.inspect(owner_id)
    return [
        ChunkSetReportOut(
            data_type=r.data_type,
            fragment_count=r.fragment_count,
            whole_blob=r.whole_blob,
            expected=r.expected,
            present=r.present,
            missing=r.missing,
            duplicate_labels=r.duplicate_labels,
            stale_whole_blobs=r.stale_whole_blobs,
            complete=r.complete,
        )
        for r in reports
    ]
