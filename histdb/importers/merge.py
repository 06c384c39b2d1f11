"""
histdb.importers.merge — Merge another history database into the store.

The source is opened read-only and streamed in id order.  Each row is
re-fingerprinted from its own ``(hist_id, cmd, epoch, ppid, pwd, salt)``
values and inserted only if new; rows are never re-timestamped.

Legacy and hand-edited files contain rows whose numeric columns hold
text such as ``"970* 1571608128 ssh ..."``.  Such values are coerced when
an integer can be recovered and the row is skipped (and counted) when it
cannot.  One bad row never fails the import, and one unreadable source
never stops the others.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional

from histdb.core.errors import HistdbError, MalformedRow, StorageUnavailable
from histdb.core.types import HistoryEntry, ImportReport, MergeSummary
from histdb.storage.store import HistoryStore

if TYPE_CHECKING:
    import sqlite3

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row coercion
# ---------------------------------------------------------------------------


def _parse_token(token: str) -> Optional[int]:
    try:
        return int(token.rstrip("*"))
    except ValueError:
        return None


def coerce_int(value: Any) -> Optional[int]:
    """Best-effort integer from a sqlite value, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, bytes):
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    tokens = text.split()
    for token in tokens[:2]:
        parsed = _parse_token(token)
        if parsed is not None:
            return parsed
    return None


def _coerce_text(value: Any, column: str) -> str:
    if value is None:
        raise MalformedRow(f"{column} is NULL", column)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def row_to_entry(row: "sqlite3.Row") -> HistoryEntry:
    """Build an entry from a source row or raise ``MalformedRow``."""
    numbers = {}
    for column in ("epoch", "ppid", "salt"):
        parsed = coerce_int(row[column])
        if parsed is None:
            raise MalformedRow(f"non-numeric {column}: {row[column]!r}", column)
        numbers[column] = parsed

    return HistoryEntry(
        command=_coerce_text(row["cmd"], "cmd"),
        executed_at=numbers["epoch"],
        parent_pid=numbers["ppid"],
        working_dir=_coerce_text(row["pwd"], "pwd"),
        salt=numbers["salt"],
        session_id=coerce_int(row["hist_id"]),
    )


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def _same_file(a: Path, b: Path) -> bool:
    try:
        return a.resolve() == b.resolve() or (b.exists() and a.samefile(b))
    except OSError:
        return False


def import_database(
    store: HistoryStore, source_path: Path | str, busy_timeout: float = 5.0
) -> ImportReport:
    """Merge one external store into *store*.

    Raises ``StorageUnavailable`` / ``SchemaIncompatible`` when the source
    cannot be opened or has no usable ``history`` table.
    """
    source_path = Path(source_path)
    if _same_file(source_path, store.db_path):
        raise StorageUnavailable(
            f"Refusing to merge {source_path} into itself", str(source_path)
        )

    report = ImportReport(source=str(source_path))
    with HistoryStore.open_readonly(source_path, busy_timeout=busy_timeout) as source:
        rows = source.iter_rows(
            "SELECT hist_id, cmd, epoch, ppid, pwd, salt FROM history ORDER BY id ASC"
        )
        with store.batch():
            for row in rows:
                try:
                    entry = row_to_entry(row)
                except MalformedRow as exc:
                    report.malformed += 1
                    log.debug("Skipping row from %s: %s", source_path, exc)
                    continue
                if store.insert_if_absent(entry) is None:
                    report.duplicates += 1
                else:
                    report.inserted += 1

    if report.malformed:
        log.warning(
            "Import from %s skipped %d corrupted row(s)", source_path, report.malformed
        )
    log.info(
        "Imported %s: inserted %d, duplicates %d, malformed %d",
        source_path,
        report.inserted,
        report.duplicates,
        report.malformed,
        extra=report.to_dict(),
    )
    return report


def merge_sources(
    store: HistoryStore,
    source_paths: Iterable[Path | str],
    busy_timeout: float = 5.0,
) -> MergeSummary:
    """Merge several sources in order; a failing source is recorded, not fatal."""
    summary = MergeSummary()
    for path in source_paths:
        try:
            summary.reports.append(
                import_database(store, path, busy_timeout=busy_timeout)
            )
        except HistdbError as exc:
            log.error("Import from %s failed: %s", path, exc)
            summary.failures[str(path)] = str(exc)
    return summary
