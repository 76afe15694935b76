"""Database models for diagnostic-store."""

from diagnostic_store.models.base import Base
from diagnostic_store.models.record import RecordRow

__all__ = [
    "Base",
    "RecordRow",
]
