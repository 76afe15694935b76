"""Exception hierarchy for diagnostic-store.

Everything raised on purpose derives from ChunkStoreError, so callers that
only care about "the store failed" can catch one type. Logical
inconsistencies in stored fragments (missing or duplicated chunks) are not
errors unless strict reassembly is switched on.
"""

from __future__ import annotations

from collections.abc import Sequence


class ChunkStoreError(Exception):
    """Base class for all diagnostic-store errors."""


class ConfigurationError(ChunkStoreError):
    """Missing credentials or invalid configuration. Never retried."""


class BackingStoreError(ChunkStoreError):
    """The backing record store rejected or failed a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


class AuthorizationError(BackingStoreError):
    """HTTP 401/403 from the record store (bad token or no access to the table)."""


class RateLimitedError(BackingStoreError):
    """HTTP 429 from the record store. Transient; the caller may retry."""


class RecordNotFoundError(BackingStoreError):
    """A record addressed by id does not exist."""


class RecordTooLargeError(BackingStoreError):
    """A field exceeded the record store's per-cell size ceiling."""


class PartialWriteError(BackingStoreError):
    """Some fragments of a blob were written before a write failed.

    Written fragments are not rolled back. ``written_ids`` lists what made it
    into the store so the caller can clean up or re-verify.
    """

    def __init__(self, message: str, *, written_ids: Sequence[str], failed: int) -> None:
        super().__init__(message)
        self.written_ids = list(written_ids)
        self.failed = failed


class IncompleteBlobError(ChunkStoreError):
    """A chunk set is missing chunks (strict reassembly only)."""

    def __init__(self, data_type: str, missing: Sequence[int], expected: int | None) -> None:
        self.data_type = data_type
        self.missing = list(missing)
        self.expected = expected
        super().__init__(
            f"Blob '{data_type}' is incomplete: missing chunks {self.missing} of {expected}"
        )
