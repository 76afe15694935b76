"""Chunked blob store over a size-capped record store.

Blobs are keyed by ``(owner_id, data_type)``. Anything over the threshold is
split into byte-bounded chunks, one record each, and glued back together on
read (see ``diagnostic_store.chunking`` for the rules).

There is no update in place and no locking. Storing the same key twice leaves
two fragment sets; reads resolve duplicates by recency.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from diagnostic_store.chunking import (
    ChunkSetReport,
    chunk_label,
    inspect_fragments,
    reassemble,
    split_utf8,
    utf8_len,
)
from diagnostic_store.config import settings
from diagnostic_store.errors import PartialWriteError
from diagnostic_store.fragments import (
    FIELD_LABEL,
    FIELD_OWNER_ID,
    Blob,
    Fragment,
    fragment_fields,
    fragment_from_record,
)
from diagnostic_store.records.base import RecordStore

logger = logging.getLogger(__name__)


def size_kb(text: str) -> float:
    return round(utf8_len(text) / 1024, 2)


class ChunkedBlobStore:
    """Store, fetch and delete blobs that may exceed a record's size ceiling.

    Usage:
        async with create_record_store() as records:
            store = ChunkedBlobStore(records)
            await store.store("run-1", "modules", payload)
            blob = await store.fetch_one("run-1", "modules")
    """

    def __init__(
        self,
        records: RecordStore,
        *,
        table: str | None = None,
        threshold_bytes: int | None = None,
        delete_batch_size: int | None = None,
        write_concurrency: int | None = None,
        strict: bool | None = None,
    ) -> None:
        self._records = records
        self._table = table or settings.diagnostic_details_table
        self._threshold = threshold_bytes or settings.chunk_threshold_bytes
        batch_size = delete_batch_size or settings.delete_batch_size
        # Never ask for more than the backend accepts in one call
        self._delete_batch_size = min(batch_size, records.bulk_limit)
        self._write_concurrency = max(write_concurrency or settings.write_concurrency, 1)
        self._strict = settings.strict_reassembly if strict is None else strict

    @property
    def table(self) -> str:
        return self._table

    async def store(self, owner_id: str, data_type: str, content: str) -> list[str]:
        """Write a blob, chunking it when it exceeds the threshold.

        Returns:
            Record ids in fragment order (the single record for small blobs).

        Raises:
            ValueError: on an empty owner id or data type.
            PartialWriteError: if any fragment write failed. Fragments that
                were written stay in the store.
        """
        if not owner_id:
            raise ValueError("owner_id must be non-empty")
        if not data_type:
            raise ValueError("data_type must be non-empty")

        size_bytes = utf8_len(content)
        created_at = datetime.now(UTC)

        if size_bytes <= self._threshold:
            record = await self._records.create(
                self._table,
                fragment_fields(owner_id, data_type, content, size_kb(content), created_at),
            )
            logger.info(
                "[CHUNKS] Stored %s/%s as one record (%.1f KB)",
                owner_id, data_type, size_bytes / 1024,
            )
            return [record.id]

        pieces = split_utf8(content, self._threshold)
        total = len(pieces)
        semaphore = asyncio.Semaphore(self._write_concurrency)

        async def write_piece(index: int, piece: str) -> str:
            async with semaphore:
                record = await self._records.create(
                    self._table,
                    fragment_fields(
                        owner_id,
                        chunk_label(data_type, index, total),
                        piece,
                        size_kb(piece),
                        created_at,
                    ),
                )
                return record.id

        results = await asyncio.gather(
            *(write_piece(i, piece) for i, piece in enumerate(pieces, start=1)),
            return_exceptions=True,
        )

        for result in results:
            # Cancellation is not a write failure
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        written = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if isinstance(r, Exception)]
        if failures:
            logger.error(
                "[CHUNKS] Partial write for %s/%s: %d of %d chunks written (%s)",
                owner_id, data_type, len(written), total, failures[0],
            )
            raise PartialWriteError(
                f"Wrote {len(written)} of {total} chunks for {owner_id}/{data_type}",
                written_ids=written,
                failed=len(failures),
            ) from failures[0]

        logger.info(
            "[CHUNKS] Stored %s/%s as %d chunks (%.1f KB)",
            owner_id, data_type, total, size_bytes / 1024,
        )
        return written

    async def fetch_all(self, owner_id: str) -> list[Blob]:
        """Reassemble every blob stored for ``owner_id``.

        Backing-store errors propagate. Missing chunks produce a short blob
        (and a warning) unless the store is strict.
        """
        fragments = await self._fetch_fragments(owner_id)
        blobs = reassemble(fragments, strict=self._strict)
        logger.debug(
            "[CHUNKS] Fetched %d blob(s) from %d fragment(s) for %s",
            len(blobs), len(fragments), owner_id,
        )
        return blobs

    async def fetch_one(self, owner_id: str, data_type: str) -> Blob | None:
        """Return the blob for ``(owner_id, data_type)``, or None if there isn't one."""
        for blob in await self.fetch_all(owner_id):
            if blob.data_type == data_type:
                return blob
        return None

    async def inspect(self, owner_id: str) -> list[ChunkSetReport]:
        """Report chunk-set completeness per data type without reassembling."""
        return inspect_fragments(await self._fetch_fragments(owner_id))

    async def delete_all(self, owner_id: str) -> None:
        """Delete every fragment of every data type stored for ``owner_id``.

        Deletes run batch by batch. If a batch fails the error propagates and
        earlier batches stay deleted; re-query to see what is left.
        """
        records = await self._records.select(
            self._table,
            {FIELD_OWNER_ID: owner_id},
            fields=[FIELD_LABEL],
        )
        ids = [record.id for record in records]
        if not ids:
            logger.info("[CHUNKS] Nothing to delete for %s", owner_id)
            return

        for start in range(0, len(ids), self._delete_batch_size):
            batch = ids[start : start + self._delete_batch_size]
            await self._records.destroy(self._table, batch)

        logger.info("[CHUNKS] Deleted %d fragment(s) for %s", len(ids), owner_id)

    async def _fetch_fragments(self, owner_id: str) -> list[Fragment]:
        records = await self._records.select(
            self._table,
            {FIELD_OWNER_ID: owner_id},
            sort=FIELD_LABEL,
        )
        return [fragment_from_record(record) for record in records]
