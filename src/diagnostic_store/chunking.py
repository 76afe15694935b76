"""Splitting blobs into byte-bounded chunks and reassembling them.

Pure functions over already-fetched fragments; no I/O.

Chunk labels follow ``{data_type}_chunk_{n}_of_{N}`` with ``n`` 1-indexed.
A fragment whose label lacks the ``_chunk_`` marker holds a whole blob.

Reassembly rules:
1. Group fragments by base type (label up to ``_chunk_``).
2. A lone whole-blob fragment is returned as is.
3. Otherwise whole-blob fragments are dropped. A group left with no chunks is
   unrecoverable and yields no blob.
4. Chunks sharing a label keep the latest ``created_at`` only.
5. Chunks are ordered by ``n`` (0 when unparseable) and concatenated with no
   separator.

Completeness against ``N`` is reported but does not stop reassembly unless
``strict`` is set: a missing chunk yields a short blob, which downstream JSON
parsing will reject.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from diagnostic_store.errors import IncompleteBlobError
from diagnostic_store.fragments import Blob, Fragment

logger = logging.getLogger(__name__)

CHUNK_MARKER = "_chunk_"

# The smallest limit that always fits a 4-byte code point
MIN_CHUNK_BYTES = 4

_CHUNK_INDEX_RE = re.compile(r"_chunk_(\d+)_of_")
_CHUNK_TOTAL_RE = re.compile(r"_chunk_\d+_of_(\d+)$")

_EPOCH = datetime.min.replace(tzinfo=UTC)


def utf8_len(text: str) -> int:
    """Size of ``text`` in UTF-8 bytes, which is what cell limits count."""
    return len(text.encode("utf-8"))


def split_utf8(text: str, limit: int) -> list[str]:
    """Split ``text`` into consecutive pieces of at most ``limit`` UTF-8 bytes.

    Cut points back off to the start of a code point, so every piece decodes on
    its own and ``"".join(pieces) == text``.
    """
    if limit < MIN_CHUNK_BYTES:
        raise ValueError(f"Chunk limit must be at least {MIN_CHUNK_BYTES} bytes, got {limit}")

    data = text.encode("utf-8")
    total = len(data)
    if total <= limit:
        return [text]

    pieces: list[str] = []
    start = 0
    while start < total:
        end = min(start + limit, total)
        # Continuation bytes look like 0b10xxxxxx
        while end < total and (data[end] & 0xC0) == 0x80:
            end -= 1
        pieces.append(data[start:end].decode("utf-8"))
        start = end
    return pieces


def chunk_label(data_type: str, index: int, total: int) -> str:
    return f"{data_type}{CHUNK_MARKER}{index}_of_{total}"


def is_chunk_label(label: str) -> bool:
    return CHUNK_MARKER in label


def base_type(label: str) -> str:
    """Strip any ``_chunk_n_of_N`` suffix from a label."""
    return label.split(CHUNK_MARKER, 1)[0]


def chunk_index(label: str) -> int:
    """Chunk number from a label; 0 if the label doesn't carry one."""
    match = _CHUNK_INDEX_RE.search(label)
    return int(match.group(1)) if match else 0


def chunk_total(label: str) -> int | None:
    """Declared chunk count from a label, or None."""
    match = _CHUNK_TOTAL_RE.search(label)
    return int(match.group(1)) if match else None


@dataclass
class ChunkSetReport:
    """Completeness report for the fragments of one base type."""

    data_type: str
    fragment_count: int
    whole_blob: bool = False
    declared_totals: list[int] = field(default_factory=list)
    present: list[int] = field(default_factory=list)
    missing: list[int] = field(default_factory=list)
    duplicate_labels: list[str] = field(default_factory=list)
    stale_whole_blobs: int = 0

    @property
    def expected(self) -> int | None:
        return max(self.declared_totals) if self.declared_totals else None

    @property
    def complete(self) -> bool:
        if self.whole_blob:
            return True
        return len(self.declared_totals) == 1 and not self.missing and bool(self.present)


def group_by_base_type(fragments: Iterable[Fragment]) -> dict[str, list[Fragment]]:
    """Group fragments by base type, keeping first-seen order."""
    groups: dict[str, list[Fragment]] = {}
    for fragment in fragments:
        groups.setdefault(base_type(fragment.label), []).append(fragment)
    return groups


def dedupe_by_label(fragments: Sequence[Fragment]) -> list[Fragment]:
    """Keep one fragment per label: the latest ``created_at``, later input on ties."""
    latest: dict[str, Fragment] = {}
    for fragment in fragments:
        current = latest.get(fragment.label)
        if current is None or _created_key(fragment) >= _created_key(current):
            latest[fragment.label] = fragment
    return list(latest.values())


def inspect_group(data_type: str, members: Sequence[Fragment]) -> ChunkSetReport:
    """Describe what is present, missing and duplicated for one base type."""
    chunks = [m for m in members if is_chunk_label(m.label)]
    whole = len(members) - len(chunks)
    report = ChunkSetReport(data_type=data_type, fragment_count=len(members))

    if not chunks:
        # Only a lone whole blob is readable; several of them are skipped on read
        report.whole_blob = whole == 1
        report.stale_whole_blobs = whole if whole > 1 else 0
        return report

    report.stale_whole_blobs = whole
    seen: set[str] = set()
    for chunk in chunks:
        if chunk.label in seen and chunk.label not in report.duplicate_labels:
            report.duplicate_labels.append(chunk.label)
        seen.add(chunk.label)

    report.declared_totals = sorted(
        {total for total in (chunk_total(label) for label in seen) if total is not None}
    )
    report.present = sorted({chunk_index(label) for label in seen})
    expected = report.expected or max(report.present, default=0)
    present = set(report.present)
    report.missing = [n for n in range(1, expected + 1) if n not in present]
    return report


def inspect_fragments(fragments: Iterable[Fragment]) -> list[ChunkSetReport]:
    return [
        inspect_group(data_type, members)
        for data_type, members in group_by_base_type(fragments).items()
    ]


def reassemble(fragments: Iterable[Fragment], *, strict: bool = False) -> list[Blob]:
    """Rebuild one Blob per base type from a fragment set.

    Raises:
        IncompleteBlobError: if ``strict`` and a chunk set is missing chunks.
    """
    blobs: list[Blob] = []
    for data_type, members in group_by_base_type(fragments).items():
        if len(members) == 1 and not is_chunk_label(members[0].label):
            only = members[0]
            blobs.append(Blob(data_type=data_type, content=only.payload, size_kb=only.size_kb))
            continue

        chunks = [m for m in members if is_chunk_label(m.label)]
        if not chunks:
            logger.error(
                "[CHUNKS] '%s' is unrecoverable: %d whole-blob records and no chunks; skipping",
                data_type, len(members),
            )
            continue

        report = inspect_group(data_type, members)
        if report.stale_whole_blobs:
            logger.info(
                "[CHUNKS] Ignoring %d stale whole-blob record(s) for chunked '%s'",
                report.stale_whole_blobs, data_type,
            )
        if report.duplicate_labels:
            logger.info(
                "[CHUNKS] Resolved duplicate chunks for '%s' by recency: %s",
                data_type, ", ".join(report.duplicate_labels),
            )
        if report.missing or len(report.declared_totals) > 1:
            if strict:
                raise IncompleteBlobError(data_type, report.missing, report.expected)
            logger.warning(
                "[CHUNKS] '%s' is incomplete (missing %s of %s, declared totals %s); "
                "returning what is present",
                data_type, report.missing, report.expected, report.declared_totals,
            )

        ordered = sorted(dedupe_by_label(chunks), key=lambda f: chunk_index(f.label))
        blobs.append(
            Blob(
                data_type=data_type,
                content="".join(f.payload for f in ordered),
                size_kb=round(sum(f.size_kb for f in ordered), 2),
            )
        )
    return blobs


def _created_key(fragment: Fragment) -> datetime:
    return fragment.created_at or _EPOCH
