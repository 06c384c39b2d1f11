"""
histdb.health — Store diagnostics and explicit maintenance.

``check_health`` is read-only: it runs SQLite's ``integrity_check``,
measures free-page fragmentation, compares the index set against
``EXPECTED_INDEXES`` and gathers row counts and sizes.  Integrity
problems are reported, never repaired.

``optimize`` applies corrective maintenance on request: create missing
indexes (the same step the store runs on open), backfill fingerprint
records, refresh planner statistics, and, only when asked, ``VACUUM``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from histdb.core.config import DEFAULT_VACUUM_THRESHOLD
from histdb.core.errors import IntegrityFailure
from histdb.storage.store import EXPECTED_INDEXES, HistoryStore

log = logging.getLogger(__name__)


@dataclass
class HealthReport:
    """Snapshot of a store's condition.

    Attributes
    ----------
    integrity_messages : list of str
        Output of ``PRAGMA integrity_check``; ``["ok"]`` when healthy.
    fragmentation : float
        Free pages / total pages (0-1).
    needs_vacuum : bool
        Fragmentation is above the configured threshold.
    missing_indexes : list of str
        Expected indexes that do not exist.
    """

    db_path: str
    integrity_messages: List[str] = field(default_factory=list)
    page_size: int = 0
    page_count: int = 0
    freelist_count: int = 0
    fragmentation: float = 0.0
    needs_vacuum: bool = False
    indexes: Dict[str, bool] = field(default_factory=dict)
    missing_indexes: List[str] = field(default_factory=list)
    history_rows: int = 0
    fingerprint_rows: int = 0
    meta_rows: int = 0
    rows_without_fingerprint: int = 0
    orphan_fingerprints: int = 0
    file_size: int = 0

    @property
    def integrity_ok(self) -> bool:
        return self.integrity_messages == ["ok"]

    @property
    def ok(self) -> bool:
        """Integrity passed and every expected index exists."""
        return self.integrity_ok and not self.missing_indexes

    def raise_for_status(self) -> None:
        if not self.integrity_ok:
            raise IntegrityFailure(self.integrity_messages)

    def to_dict(self) -> Dict:
        return {
            "db_path": self.db_path,
            "ok": self.ok,
            "integrity_ok": self.integrity_ok,
            "integrity_messages": list(self.integrity_messages),
            "page_size": self.page_size,
            "page_count": self.page_count,
            "freelist_count": self.freelist_count,
            "fragmentation": round(self.fragmentation, 4),
            "needs_vacuum": self.needs_vacuum,
            "indexes": dict(self.indexes),
            "missing_indexes": list(self.missing_indexes),
            "history_rows": self.history_rows,
            "fingerprint_rows": self.fingerprint_rows,
            "meta_rows": self.meta_rows,
            "rows_without_fingerprint": self.rows_without_fingerprint,
            "orphan_fingerprints": self.orphan_fingerprints,
            "file_size": self.file_size,
        }


@dataclass
class OptimizeResult:
    created_indexes: List[str] = field(default_factory=list)
    backfilled_fingerprints: int = 0
    analyzed: bool = False
    vacuumed: bool = False
    size_before: int = 0
    size_after: int = 0

    def to_dict(self) -> Dict:
        return {
            "created_indexes": list(self.created_indexes),
            "backfilled_fingerprints": self.backfilled_fingerprints,
            "analyzed": self.analyzed,
            "vacuumed": self.vacuumed,
            "size_before": self.size_before,
            "size_after": self.size_after,
        }


def _pragma_int(store: HistoryStore, name: str) -> int:
    return int(store.query(f"PRAGMA {name}")[0][0])


def integrity_messages(store: HistoryStore) -> List[str]:
    return [str(row[0]) for row in store.query("PRAGMA integrity_check")]


def check_health(
    store: HistoryStore, vacuum_threshold: float = DEFAULT_VACUUM_THRESHOLD
) -> HealthReport:
    """Inspect *store* without changing it."""
    report = HealthReport(db_path=str(store.db_path))
    report.integrity_messages = integrity_messages(store)
    if not report.integrity_ok:
        log.error("Integrity check failed for %s: %s", store.db_path, report.integrity_messages)

    report.page_size = _pragma_int(store, "page_size")
    report.page_count = _pragma_int(store, "page_count")
    report.freelist_count = _pragma_int(store, "freelist_count")
    if report.page_count:
        report.fragmentation = report.freelist_count / report.page_count
    report.needs_vacuum = report.fragmentation > vacuum_threshold

    existing = set(store.existing_indexes())
    report.indexes = {name: name in existing for name in EXPECTED_INDEXES}
    report.missing_indexes = [name for name, present in report.indexes.items() if not present]

    report.history_rows = store.count("history")
    report.fingerprint_rows = store.count("history_hash")
    report.meta_rows = store.count("meta")
    report.rows_without_fingerprint = store.rows_without_fingerprint()
    report.orphan_fingerprints = store.orphan_fingerprints()
    report.file_size = store.file_size()
    return report


def optimize(
    store: HistoryStore,
    create_indexes: bool = True,
    backfill: bool = True,
    analyze: bool = True,
    vacuum: bool = False,
) -> OptimizeResult:
    """Apply the requested maintenance steps."""
    result = OptimizeResult(size_before=store.file_size())

    if create_indexes:
        result.created_indexes = store.ensure_indexes()

    if backfill:
        result.backfilled_fingerprints = store.backfill_fingerprints()
        if result.backfilled_fingerprints:
            log.info("Backfilled %d fingerprint records", result.backfilled_fingerprints)

    if analyze:
        store.analyze()
        result.analyzed = True

    if vacuum:
        store.vacuum()
        result.vacuumed = True
        log.info("VACUUM completed for %s", store.db_path)

    result.size_after = store.file_size()
    return result
