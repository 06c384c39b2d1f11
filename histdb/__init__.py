"""
histdb -- Deduplicated shell history in a local SQLite store.

    from histdb import Config, HistoryStore, Ingestor, QueryEngine

    store = HistoryStore.open("~/.histdb.sqlite")
    Ingestor(store).log("git status", 1700000000, 4242, "/src/app", 17)
    entries = QueryEngine(store).list_entries()
"""

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
from histdb.core.types import HistoryEntry, ImportReport, IngestResult, IngestStatus
from histdb.ingest import Ingestor, NoiseFilter
from histdb.query.engine import QueryEngine
from histdb.query.filters import HistoryFilter, LocationMode, LocationScope, SessionScope
from histdb.storage.store import HistoryStore

__version__ = "0.1.0"

__all__ = [
    "Config",
    "HistoryStore",
    "HistoryEntry",
    "Ingestor",
    "NoiseFilter",
    "IngestResult",
    "IngestStatus",
    "ImportReport",
    "QueryEngine",
    "HistoryFilter",
    "LocationMode",
    "LocationScope",
    "SessionScope",
    "HistdbError",
    "StorageUnavailable",
    "SchemaIncompatible",
    "StoreBusy",
    "MalformedRow",
    "FilterConflict",
    "IntegrityFailure",
]
