"""
History store — SQLite-backed persistence for executed commands.

One file holds three tables:

    history(id, hist_id, cmd, epoch, ppid, pwd, salt)
    history_hash(hash UNIQUE, history_id)
    meta(key, value)

The layout stays read-compatible with the dbhist/sdbh files this tool
succeeds, so an existing file can be opened in place or merged.  Every
write goes through ``insert_if_absent``: the fingerprint record, the
history row and the link between them are written under one savepoint
and either all land or none do.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from histdb.core.errors import (
    SchemaIncompatible,
    StorageUnavailable,
    StoreBusy,
)
from histdb.core.types import HistoryEntry
from histdb.storage.fingerprint import FINGERPRINT_SCHEME, fingerprint as compute_fingerprint

log = logging.getLogger(__name__)

#: On-disk schema generation written to ``meta.schema_version``.
SCHEMA_VERSION = 1

#: Index name -> DDL.  All query paths rely on these.
EXPECTED_INDEXES: Dict[str, str] = {
    "idx_history_session": (
        "CREATE INDEX IF NOT EXISTS idx_history_session ON history(salt, ppid)"
    ),
    "idx_history_pwd": "CREATE INDEX IF NOT EXISTS idx_history_pwd ON history(pwd)",
    "idx_history_hash": (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_history_hash ON history_hash(hash)"
    ),
    "idx_history_epoch": (
        "CREATE INDEX IF NOT EXISTS idx_history_epoch ON history(epoch)"
    ),
}

REQUIRED_COLUMNS: Dict[str, frozenset] = {
    "history": frozenset({"id", "hist_id", "cmd", "epoch", "ppid", "pwd", "salt"}),
    "history_hash": frozenset({"hash", "history_id"}),
    "meta": frozenset({"key", "value"}),
}

_SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS history (
    id      INTEGER PRIMARY KEY AUTOINCREMENT,
    hist_id INTEGER,
    cmd     TEXT,
    epoch   INTEGER,
    ppid    INTEGER,
    pwd     TEXT,
    salt    INTEGER
);

CREATE TABLE IF NOT EXISTS history_hash (
    hash       TEXT PRIMARY KEY,
    history_id INTEGER
);

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_LOCK_MARKERS = ("locked", "busy")
_NOT_A_STORE_MARKERS = ("not a database", "malformed", "encrypted")


def translate_error(exc: sqlite3.Error, path: Path | str) -> Exception:
    """Map a sqlite error onto the histdb error taxonomy."""
    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and any(
        m in message for m in _LOCK_MARKERS
    ):
        return StoreBusy(f"{path}: {exc}")
    if isinstance(exc, sqlite3.DatabaseError) and any(
        m in message for m in _NOT_A_STORE_MARKERS
    ):
        return SchemaIncompatible(f"{path} is not a history store: {exc}", str(path))
    return StorageUnavailable(f"{path}: {exc}", str(path))


class HistoryStore:
    """SQLite store for history entries, fingerprints and meta markers."""

    def __init__(
        self,
        db_path: Path | str,
        busy_timeout: float = 5.0,
        read_only: bool = False,
    ):
        self.db_path = Path(db_path)
        self.read_only = read_only

        # Batch write support: when _batch_depth > 0, per-entry commits
        # are suppressed and one commit runs when the outermost batch
        # context exits.
        self._batch_depth: int = 0

        self.conn = self._connect(busy_timeout)
        try:
            if read_only:
                self._check_columns()
            else:
                self._create_tables()
                self.ensure_indexes()
                if self.meta_get("fingerprint_scheme") != FINGERPRINT_SCHEME:
                    self.rebuild_fingerprints()
        except BaseException:
            self.conn.close()
            raise

    @classmethod
    def open(cls, db_path: Path | str, busy_timeout: float = 5.0) -> "HistoryStore":
        """Open or create the store at *db_path*.  Idempotent."""
        return cls(db_path, busy_timeout=busy_timeout)

    @classmethod
    def open_readonly(
        cls, db_path: Path | str, busy_timeout: float = 5.0
    ) -> "HistoryStore":
        """Open an existing store without creating or migrating anything."""
        return cls(db_path, busy_timeout=busy_timeout, read_only=True)

    # ── Connection ─────────────────────────────────────────────

    def _connect(self, busy_timeout: float) -> sqlite3.Connection:
        try:
            if self.read_only:
                if not self.db_path.is_file():
                    raise StorageUnavailable(
                        f"No such store file: {self.db_path}", str(self.db_path)
                    )
                uri = self.db_path.resolve().as_uri() + "?mode=ro"
                conn = sqlite3.connect(uri, uri=True, timeout=busy_timeout)
            else:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.db_path), timeout=busy_timeout)
        except OSError as exc:
            raise StorageUnavailable(
                f"Cannot create store at {self.db_path}: {exc}", str(self.db_path)
            ) from exc
        except sqlite3.Error as exc:
            raise translate_error(exc, self.db_path) from exc

        conn.row_factory = sqlite3.Row
        return conn

    # ── Batch writes ────────────────────────────────────────────

    class _BatchContext:
        """Context manager that holds one write transaction until exit."""

        def __init__(self, store: "HistoryStore") -> None:
            self._store = store

        def __enter__(self) -> "HistoryStore":
            store = self._store
            if store._batch_depth == 0:
                try:
                    store.conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as exc:
                    raise translate_error(exc, store.db_path) from exc
            store._batch_depth += 1
            return store

        def __exit__(self, exc_type, exc_val, exc_tb) -> None:
            store = self._store
            store._batch_depth -= 1
            if store._batch_depth > 0:
                return
            store._batch_depth = 0
            if exc_type is None:
                try:
                    store.conn.commit()
                except sqlite3.Error as exc:
                    store.conn.rollback()
                    raise translate_error(exc, store.db_path) from exc
            else:
                store.conn.rollback()

    def batch(self) -> "_BatchContext":
        """Return a context manager that batches writes into one transaction.

        The write lock is taken up front (``BEGIN IMMEDIATE``), so lock
        contention surfaces as ``StoreBusy`` before any row is touched.
        Each insert inside the batch is still atomic on its own.

        Usage::

            with store.batch():
                for entry in entries:
                    store.insert_if_absent(entry)
            # single commit happens here
        """
        return self._BatchContext(self)

    def _commit(self) -> None:
        """Commit unless inside a batch context."""
        if self._batch_depth <= 0:
            self.conn.commit()

    # ── Schema ────────────────────────────────────────────────

    def _create_tables(self) -> None:
        try:
            try:
                self.conn.execute("PRAGMA journal_mode=WAL")
            except sqlite3.OperationalError as exc:
                if any(m in str(exc).lower() for m in _LOCK_MARKERS):
                    raise
                log.debug("WAL not available for %s: %s", self.db_path, exc)

            self.conn.executescript(_SCHEMA_DDL)
            self._check_columns()

            self.conn.execute(
                "INSERT OR IGNORE INTO meta(key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise translate_error(exc, self.db_path) from exc

        version = self.meta_get("schema_version")
        try:
            on_disk = int(version)
        except (TypeError, ValueError):
            raise SchemaIncompatible(
                f"{self.db_path}: unreadable schema_version {version!r}",
                str(self.db_path),
            )
        if on_disk > SCHEMA_VERSION:
            raise SchemaIncompatible(
                f"{self.db_path}: schema version {on_disk} is newer than "
                f"supported version {SCHEMA_VERSION}",
                str(self.db_path),
            )

    def _check_columns(self) -> None:
        """Raise ``SchemaIncompatible`` if a required table lacks columns."""
        tables = ("history",) if self.read_only else tuple(REQUIRED_COLUMNS)
        for table in tables:
            try:
                rows = self.conn.execute(f"PRAGMA table_info({table})").fetchall()
            except sqlite3.Error as exc:
                raise translate_error(exc, self.db_path) from exc
            present = {row["name"] for row in rows}
            if not present:
                raise SchemaIncompatible(
                    f"{self.db_path} does not have a {table} table",
                    str(self.db_path),
                )
            missing = REQUIRED_COLUMNS[table] - present
            if missing:
                raise SchemaIncompatible(
                    f"{self.db_path}: table {table} is missing columns "
                    f"{sorted(missing)}",
                    str(self.db_path),
                )

    # ── Indexes ───────────────────────────────────────────────

    def existing_indexes(self) -> List[str]:
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_%'"
        )
        return sorted(row["name"] for row in rows)

    def missing_indexes(self) -> List[str]:
        existing = set(self.existing_indexes())
        return [name for name in EXPECTED_INDEXES if name not in existing]

    def ensure_indexes(self) -> List[str]:
        """Create any expected index that is absent.  Returns the names created."""
        missing = self.missing_indexes()
        if not missing:
            return []
        try:
            for name in missing:
                self.conn.execute(EXPECTED_INDEXES[name])
            self._commit()
        except sqlite3.Error as exc:
            if self._batch_depth <= 0:
                self.conn.rollback()
            raise translate_error(exc, self.db_path) from exc
        log.info("Created indexes on %s: %s", self.db_path, ", ".join(missing))
        return missing

    # ── Fingerprint records ──────────────────────────────────

    def rebuild_fingerprints(self) -> int:
        """Recompute every fingerprint record under the current scheme.

        Used when adopting a file written by an older tool (no records,
        or records under a different hashing scheme).  Only well-typed
        rows get a record; when two rows share an identity the earlier
        one keeps it.  Returns the number of records written.
        """
        with self.batch():
            self.conn.execute("DELETE FROM history_hash")
            written = self._write_missing_fingerprints()
            self.meta_set("fingerprint_scheme", FINGERPRINT_SCHEME)
        if written:
            log.info("Rebuilt %d fingerprint records in %s", written, self.db_path)
        return written

    def backfill_fingerprints(self) -> int:
        """Add fingerprint records for rows that lack one."""
        with self.batch():
            return self._write_missing_fingerprints()

    def _write_missing_fingerprints(self) -> int:
        rows = self.conn.execute(
            """
            SELECT h.* FROM history h
            LEFT JOIN history_hash x ON x.history_id = h.id
            WHERE x.history_id IS NULL
              AND typeof(h.epoch) = 'integer'
              AND typeof(h.ppid) = 'integer'
              AND typeof(h.salt) = 'integer'
              AND h.cmd IS NOT NULL AND h.pwd IS NOT NULL
            ORDER BY h.id
            """
        ).fetchall()
        written = 0
        for row in rows:
            entry = HistoryEntry.from_row(row)
            if not isinstance(entry.session_id, int):
                entry.session_id = None
            cur = self.conn.execute(
                "INSERT OR IGNORE INTO history_hash(hash, history_id) VALUES (?, ?)",
                (compute_fingerprint(entry), entry.id),
            )
            written += cur.rowcount
        return written

    def rows_without_fingerprint(self) -> int:
        row = self.query(
            """
            SELECT COUNT(*) FROM history h
            LEFT JOIN history_hash x ON x.history_id = h.id
            WHERE x.history_id IS NULL
            """
        )[0]
        return row[0]

    def orphan_fingerprints(self) -> int:
        row = self.query(
            """
            SELECT COUNT(*) FROM history_hash x
            LEFT JOIN history h ON h.id = x.history_id
            WHERE h.id IS NULL
            """
        )[0]
        return row[0]

    def owner_of(self, fingerprint: str) -> Optional[int]:
        """Return the history id owning *fingerprint*, or None."""
        rows = self.query(
            "SELECT history_id FROM history_hash WHERE hash = ?", (fingerprint,)
        )
        return rows[0]["history_id"] if rows else None

    # ── Write ─────────────────────────────────────────────────

    def insert_if_absent(
        self, entry: HistoryEntry, fingerprint: Optional[str] = None
    ) -> Optional[int]:
        """Insert *entry* unless its fingerprint is already stored.

        Returns the new row id, or None for a duplicate.  The fingerprint
        record is claimed first, so two processes racing on the same
        entry cannot both insert it.
        """
        if self.read_only:
            raise StorageUnavailable(
                f"{self.db_path} is opened read-only", str(self.db_path)
            )
        fp = fingerprint or compute_fingerprint(entry)
        if self._batch_depth <= 0:
            self._begin()
        try:
            self.conn.execute("SAVEPOINT histdb_entry")
            try:
                cur = self.conn.execute(
                    "INSERT OR IGNORE INTO history_hash(hash, history_id) VALUES (?, NULL)",
                    (fp,),
                )
                if cur.rowcount == 0:
                    new_id = None
                else:
                    cur = self.conn.execute(
                        """
                        INSERT INTO history(hist_id, cmd, epoch, ppid, pwd, salt)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            entry.session_id,
                            entry.command,
                            entry.executed_at,
                            entry.parent_pid,
                            entry.working_dir,
                            entry.salt,
                        ),
                    )
                    new_id = cur.lastrowid
                    self.conn.execute(
                        "UPDATE history_hash SET history_id = ? WHERE hash = ?",
                        (new_id, fp),
                    )
            except sqlite3.Error:
                self.conn.execute("ROLLBACK TO histdb_entry")
                self.conn.execute("RELEASE histdb_entry")
                raise
            self.conn.execute("RELEASE histdb_entry")
            self._commit()
        except sqlite3.Error as exc:
            if self._batch_depth <= 0:
                self.conn.rollback()
            raise translate_error(exc, self.db_path) from exc
        return new_id

    def append(self, entry: HistoryEntry) -> int:
        """Store *entry* and return the id of the row that owns its fingerprint.

        Appending an entry that is already present returns the existing
        row's id instead of writing a second row.
        """
        fp = compute_fingerprint(entry)
        new_id = self.insert_if_absent(entry, fp)
        if new_id is not None:
            return new_id
        return self.owner_of(fp)

    def _begin(self) -> None:
        """Open a write transaction for a single, non-batched insert."""
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise translate_error(exc, self.db_path) from exc

    # ── Meta ──────────────────────────────────────────────────

    def meta_get(self, key: str) -> Optional[str]:
        rows = self.query("SELECT value FROM meta WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def meta_set(self, key: str, value: str) -> None:
        try:
            self.conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES (?, ?)", (key, value)
            )
            self._commit()
        except sqlite3.Error as exc:
            if self._batch_depth <= 0:
                self.conn.rollback()
            raise translate_error(exc, self.db_path) from exc

    # ── Read ──────────────────────────────────────────────────

    def query(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        """Run a read statement and return all rows."""
        try:
            return self.conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise translate_error(exc, self.db_path) from exc

    def iter_rows(self, sql: str, params: Sequence = ()) -> Iterator[sqlite3.Row]:
        """Stream rows of a read statement."""
        try:
            cursor = self.conn.execute(sql, tuple(params))
            for row in cursor:
                yield row
        except sqlite3.Error as exc:
            raise translate_error(exc, self.db_path) from exc

    def get(self, entry_id: int) -> Optional[HistoryEntry]:
        rows = self.query("SELECT * FROM history WHERE id = ?", (entry_id,))
        return HistoryEntry.from_row(rows[0]) if rows else None

    def count(self, table: str = "history") -> int:
        if table not in REQUIRED_COLUMNS:
            raise ValueError(f"Invalid table: {table}")
        return self.query(f"SELECT COUNT(*) FROM {table}")[0][0]

    # ── Maintenance ───────────────────────────────────────────

    def analyze(self) -> None:
        try:
            self.conn.execute("ANALYZE")
            self._commit()
        except sqlite3.Error as exc:
            raise translate_error(exc, self.db_path) from exc

    def vacuum(self) -> None:
        """Compact the file.  Must not run inside a batch."""
        if self._batch_depth > 0:
            raise RuntimeError("VACUUM cannot run inside a batch")
        try:
            self.conn.commit()
            self.conn.execute("VACUUM")
        except sqlite3.Error as exc:
            raise translate_error(exc, self.db_path) from exc

    def file_size(self) -> int:
        """Bytes on disk for the main file plus its WAL, if any."""
        total = 0
        for path in (self.db_path, Path(str(self.db_path) + "-wal")):
            try:
                total += path.stat().st_size
            except OSError:
                pass
        return total

    # ── Lifecycle ─────────────────────────────────────────────

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "HistoryStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
