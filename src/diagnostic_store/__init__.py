"""Chunked storage for oversized diagnostic run payloads."""

from diagnostic_store.fragments import Blob, Fragment
from diagnostic_store.records import RecordStore, create_record_store
from diagnostic_store.store import ChunkedBlobStore

__version__ = "0.1.0"

__all__ = [
    "Blob",
    "ChunkedBlobStore",
    "Fragment",
    "RecordStore",
    "__version__",
    "create_record_store",
]
