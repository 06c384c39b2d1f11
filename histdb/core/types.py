"""
histdb.core.types — Data types shared across the store, importers and
query engine.

Every structure here is a plain dataclass: no ORM, serialisable to a
dict in one call.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


# ---------------------------------------------------------------------------
# HistoryEntry — one recorded command execution
# ---------------------------------------------------------------------------


@dataclass
class HistoryEntry:
    """
    One executed command.

    ``command``, ``executed_at``, ``parent_pid``, ``working_dir`` and
    ``salt`` form the identity of an entry; ``session_id`` (the shell's
    own history number, stored as ``hist_id``) is carried along when the
    source provides one.  ``id`` is assigned by the store.
    """

    command: str
    executed_at: int
    parent_pid: int
    working_dir: str
    salt: int
    session_id: Optional[int] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "HistoryEntry":
        """Build from a ``history`` row (column names of the on-disk schema)."""
        return cls(
            command=row["cmd"],
            executed_at=row["epoch"],
            parent_pid=row["ppid"],
            working_dir=row["pwd"],
            salt=row["salt"],
            session_id=row["hist_id"],
            id=row["id"],
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "command": self.command,
            "executed_at": self.executed_at,
            "parent_pid": self.parent_pid,
            "working_dir": self.working_dir,
            "salt": self.salt,
        }


# ---------------------------------------------------------------------------
# Ingest outcome
# ---------------------------------------------------------------------------


class IngestStatus(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    FILTERED = "filtered"
    FAILED = "failed"


@dataclass
class IngestResult:
    """Outcome of recording one live command.

    ``error`` is set only for ``FAILED``; the caller decides whether to
    surface it (a shell hook normally swallows it).
    """

    status: IngestStatus
    entry_id: Optional[int] = None
    fingerprint: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status is not IngestStatus.FAILED

    def to_dict(self) -> Dict:
        return {
            "status": self.status.value,
            "entry_id": self.entry_id,
            "fingerprint": self.fingerprint,
            "error": str(self.error) if self.error else None,
        }


# ---------------------------------------------------------------------------
# Import reports
# ---------------------------------------------------------------------------


@dataclass
class ImportReport:
    """Counts for one imported source.

    Attributes
    ----------
    source : str
        Path (or label) of the source.
    inserted : int
        New rows written to the store.
    duplicates : int
        Candidates whose fingerprint was already present.
    malformed : int
        Rows/lines skipped because they could not be parsed.
    """

    source: str
    inserted: int = 0
    duplicates: int = 0
    malformed: int = 0

    @property
    def considered(self) -> int:
        return self.inserted + self.duplicates + self.malformed

    def to_dict(self) -> Dict:
        return {
            "source": self.source,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "malformed": self.malformed,
            "considered": self.considered,
        }


@dataclass
class MergeSummary:
    """Result of merging several external stores in one invocation."""

    reports: List[ImportReport] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """True when at least one source was merged."""
        return bool(self.reports)

    @property
    def inserted(self) -> int:
        return sum(r.inserted for r in self.reports)

    @property
    def duplicates(self) -> int:
        return sum(r.duplicates for r in self.reports)

    @property
    def malformed(self) -> int:
        return sum(r.malformed for r in self.reports)

    def to_dict(self) -> Dict:
        return {
            "sources": [r.to_dict() for r in self.reports],
            "failures": dict(self.failures),
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "malformed": self.malformed,
            "ok": self.ok,
        }
