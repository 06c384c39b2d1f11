"""histdb.core — Configuration, errors, logging and shared types."""

from histdb.core.config import Config
from histdb.core.errors import (
    FilterConflict,
    HistdbError,
    IntegrityFailure,
    MalformedRow,
    SchemaIncompatible,
    StorageUnavailable,
    StoreBusy,
)
from histdb.core.types import (
    HistoryEntry,
    ImportReport,
    IngestResult,
    IngestStatus,
    MergeSummary,
)

__all__ = [
    "Config",
    "HistdbError",
    "StorageUnavailable",
    "SchemaIncompatible",
    "StoreBusy",
    "MalformedRow",
    "FilterConflict",
    "IntegrityFailure",
    "HistoryEntry",
    "ImportReport",
    "IngestResult",
    "IngestStatus",
    "MergeSummary",
]
