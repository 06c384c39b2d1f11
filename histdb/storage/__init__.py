"""histdb.storage — SQLite store and entry fingerprints."""

from histdb.storage.fingerprint import fingerprint
from histdb.storage.store import EXPECTED_INDEXES, HistoryStore

__all__ = ["EXPECTED_INDEXES", "HistoryStore", "fingerprint"]
