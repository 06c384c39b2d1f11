"""
histdb.query.engine — Read views over the history store.

All views share the ``HistoryFilter`` model:

- **listing**: entries oldest first, ``id`` breaking timestamp ties;
- **search**: case-insensitive literal substring match on the command;
- **summary**: one row per command (optionally per command and
  directory) with a count and the most recent execution;
- **stats**: top commands, top command/directory pairs, and per-day
  counts in local time;
- **selector / preview**: one line per candidate for an external fuzzy
  selector, and a detail lookup for whatever line comes back.

``unlimited`` lifts the result cap.  ``daily_counts`` is never capped,
so for it the flag changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Tuple

from histdb.core.types import HistoryEntry
from histdb.query.filters import VALID_EPOCH, HistoryFilter, escape_like

if TYPE_CHECKING:
    from histdb.core.config import Config
    from histdb.storage.store import HistoryStore

log = logging.getLogger(__name__)

_LIKE_ESCAPE = "ESCAPE '\\'"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class SummaryRow:
    command: str
    count: int
    last_executed_at: int
    last_id: int
    working_dir: Optional[str] = None

    def to_dict(self) -> Dict:
        d = {
            "command": self.command,
            "count": self.count,
            "last_executed_at": self.last_executed_at,
            "last_id": self.last_id,
        }
        if self.working_dir is not None:
            d["working_dir"] = self.working_dir
        return d


@dataclass
class CommandCount:
    command: str
    count: int
    working_dir: Optional[str] = None

    def to_dict(self) -> Dict:
        d = {"command": self.command, "count": self.count}
        if self.working_dir is not None:
            d["working_dir"] = self.working_dir
        return d


@dataclass
class DayCount:
    day: str  # YYYY-MM-DD, local time
    count: int

    def to_dict(self) -> Dict:
        return {"day": self.day, "count": self.count}


@dataclass
class CommandPreview:
    """Detail for one command picked in the selector."""

    command: str
    count: int = 0
    first_executed_at: Optional[int] = None
    last_executed_at: Optional[int] = None
    directories: List[Tuple[str, int]] = field(default_factory=list)
    recent: List[HistoryEntry] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.count > 0

    def to_dict(self) -> Dict:
        return {
            "command": self.command,
            "count": self.count,
            "first_executed_at": self.first_executed_at,
            "last_executed_at": self.last_executed_at,
            "directories": [{"working_dir": d, "count": c} for d, c in self.directories],
            "recent": [e.to_dict() for e in self.recent],
        }


# ---------------------------------------------------------------------------
# Selector line format
# ---------------------------------------------------------------------------

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\t": "\\t", "\r": "\\r"}
_UNESCAPES = {"\\": "\\", "n": "\n", "t": "\t", "r": "\r"}


def escape_command(command: str) -> str:
    """Make a command safe to show on a single tab-separated line."""
    return "".join(_ESCAPES.get(ch, ch) for ch in command)


def unescape_command(text: str) -> str:
    out: List[str] = []
    chars = iter(text)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, None)
            if nxt is None:
                out.append("\\")
            else:
                out.append(_UNESCAPES.get(nxt, "\\" + nxt))
        else:
            out.append(ch)
    return "".join(out)


def format_local(epoch) -> str:
    """Local ``YYYY-mm-dd HH:MM:SS``; the raw value when it is not a usable epoch."""
    if not isinstance(epoch, int) or isinstance(epoch, bool):
        return str(epoch)
    try:
        return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, ValueError, OSError):
        return str(epoch)


def format_selector_line(row: SummaryRow) -> str:
    """``<last_id>\\t<local datetime>\\t<escaped command>``"""
    return f"{row.last_id}\t{format_local(row.last_executed_at)}\t{escape_command(row.command)}"


def command_from_selector_line(line: str) -> str:
    """Recover the command from a line the selector handed back.

    A line that does not carry the three tab-separated fields is taken
    as a bare command.
    """
    line = line.rstrip("\r\n")
    parts = line.split("\t", 2)
    if len(parts) == 3 and parts[0].strip().isdigit():
        return unescape_command(parts[2])
    return line


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class QueryEngine:
    """Builds filtered, ordered read views against a ``HistoryStore``."""

    def __init__(
        self,
        store: "HistoryStore",
        session_policy: str = "reject",
        stats_days: int = 30,
    ) -> None:
        self.store = store
        self.session_policy = session_policy
        self.stats_days = stats_days

    @classmethod
    def from_config(cls, store: "HistoryStore", config: "Config") -> "QueryEngine":
        return cls(
            store,
            session_policy=config.session_filter_policy,
            stats_days=config.stats_days,
        )

    def _check(self, filt: Optional[HistoryFilter]) -> HistoryFilter:
        return (filt or HistoryFilter()).validated(self.session_policy)

    # ── Listing & search ─────────────────────────────────────

    def list_entries(
        self, filt: Optional[HistoryFilter] = None, query: Optional[str] = None
    ) -> List[HistoryEntry]:
        """Entries oldest first.

        With a cap, the most recent ``limit`` entries (after skipping
        ``offset`` newer ones) are returned, still oldest first.
        """
        filt = self._check(filt)
        where, params = filt.where()
        if query:
            where += f" AND cmd LIKE ? {_LIKE_ESCAPE}"
            params.append("%" + escape_like(query) + "%")

        if filt.unlimited and not filt.offset:
            sql = f"SELECT * FROM history WHERE {where} ORDER BY epoch ASC, id ASC"
        else:
            limit_sql, limit_params = filt.limit_clause()
            sql = (
                f"SELECT * FROM ("
                f"SELECT * FROM history WHERE {where} "
                f"ORDER BY epoch DESC, id DESC {limit_sql}"
                f") ORDER BY epoch ASC, id ASC"
            )
            params.extend(limit_params)

        return [HistoryEntry.from_row(r) for r in self.store.query(sql, params)]

    def search(
        self, term: str, filt: Optional[HistoryFilter] = None
    ) -> List[HistoryEntry]:
        """Entries whose command contains *term* literally (ASCII case-insensitive)."""
        return self.list_entries(filt, query=term)

    # ── Summary ──────────────────────────────────────────────

    def summary(
        self,
        filt: Optional[HistoryFilter] = None,
        query: Optional[str] = None,
        starts_with: bool = False,
        by_directory: bool = False,
    ) -> List[SummaryRow]:
        """Grouped counts, most recently used first."""
        filt = self._check(filt)
        where, params = filt.where()
        if query:
            pattern = escape_like(query) + "%"
            if not starts_with:
                pattern = "%" + pattern
            where += f" AND cmd LIKE ? {_LIKE_ESCAPE}"
            params.append(pattern)

        group = "cmd, pwd" if by_directory else "cmd"
        select_pwd = ", pwd" if by_directory else ""
        limit_sql, limit_params = filt.limit_clause()
        # last_epoch and last_id come from the same row: the latest by (epoch, id).
        sql = (
            f"SELECT cmd{select_pwd}, cnt, last_epoch, last_id FROM ("
            f"SELECT cmd{select_pwd}, epoch AS last_epoch, id AS last_id, "
            f"COUNT(*) OVER (PARTITION BY {group}) AS cnt, "
            f"ROW_NUMBER() OVER (PARTITION BY {group} ORDER BY epoch DESC, id DESC) AS rn "
            f"FROM history WHERE {where}"
            f") WHERE rn = 1 "
            f"ORDER BY last_epoch DESC, last_id DESC {limit_sql}"
        )
        rows = self.store.query(sql, params + limit_params)
        return [
            SummaryRow(
                command=r["cmd"],
                count=r["cnt"],
                last_executed_at=r["last_epoch"],
                last_id=r["last_id"],
                working_dir=r["pwd"] if by_directory else None,
            )
            for r in rows
        ]

    # ── Stats ────────────────────────────────────────────────

    def _stats_filter(self, filt: Optional[HistoryFilter]) -> HistoryFilter:
        filt = self._check(filt)
        if filt.since_days is None and filt.since_epoch is None:
            filt = replace(filt, since_days=self.stats_days)
        return filt

    def top_commands(self, filt: Optional[HistoryFilter] = None) -> List[CommandCount]:
        """Most frequent commands in the trailing window."""
        filt = self._stats_filter(filt)
        where, params = filt.where()
        limit_sql, limit_params = filt.limit_clause()
        rows = self.store.query(
            f"SELECT cmd, COUNT(*) AS cnt FROM history WHERE {where} "
            f"GROUP BY cmd ORDER BY cnt DESC, MAX(id) DESC {limit_sql}",
            params + limit_params,
        )
        return [CommandCount(r["cmd"], r["cnt"]) for r in rows]

    def top_directories(self, filt: Optional[HistoryFilter] = None) -> List[CommandCount]:
        """Most frequent commands grouped by directory."""
        filt = self._stats_filter(filt)
        where, params = filt.where()
        limit_sql, limit_params = filt.limit_clause()
        rows = self.store.query(
            f"SELECT pwd, cmd, COUNT(*) AS cnt FROM history WHERE {where} "
            f"GROUP BY pwd, cmd ORDER BY cnt DESC, MAX(id) DESC {limit_sql}",
            params + limit_params,
        )
        return [CommandCount(r["cmd"], r["cnt"], working_dir=r["pwd"]) for r in rows]

    def daily_counts(self, filt: Optional[HistoryFilter] = None) -> List[DayCount]:
        """Executions per local-time day, oldest first.

        Every day in range is returned: the result cap, and therefore
        ``unlimited``, does not apply here.
        """
        filt = self._stats_filter(filt)
        where, params = filt.where()
        rows = self.store.query(
            f"SELECT date(epoch, 'unixepoch', 'localtime') AS day, COUNT(*) AS cnt "
            f"FROM history WHERE {where} GROUP BY day ORDER BY day ASC",
            params,
        )
        return [DayCount(r["day"], r["cnt"]) for r in rows]

    def stats(self, filt: Optional[HistoryFilter] = None) -> Dict:
        """All three aggregate views in one dict."""
        return {
            "top_commands": [c.to_dict() for c in self.top_commands(filt)],
            "top_directories": [c.to_dict() for c in self.top_directories(filt)],
            "daily_counts": [d.to_dict() for d in self.daily_counts(filt)],
        }

    # ── Selector & preview ───────────────────────────────────

    def selector_lines(
        self, filt: Optional[HistoryFilter] = None, query: Optional[str] = None
    ) -> Iterator[str]:
        """One line per distinct command, most recent first."""
        for row in self.summary(filt, query=query):
            yield format_selector_line(row)

    def preview(self, command: str, recent: int = 5, directories: int = 5) -> CommandPreview:
        """Details for *command* (exact match) across the whole store."""
        preview = CommandPreview(command=command)
        agg = self.store.query(
            "SELECT COUNT(*) AS cnt, MIN(epoch) AS first_epoch, MAX(epoch) AS last_epoch "
            f"FROM history WHERE cmd = ? AND {VALID_EPOCH}",
            (command,),
        )[0]
        if not agg["cnt"]:
            return preview

        preview.count = agg["cnt"]
        preview.first_executed_at = agg["first_epoch"]
        preview.last_executed_at = agg["last_epoch"]
        preview.directories = [
            (r["pwd"], r["cnt"])
            for r in self.store.query(
                "SELECT pwd, COUNT(*) AS cnt FROM history "
                f"WHERE cmd = ? AND {VALID_EPOCH} "
                "GROUP BY pwd ORDER BY cnt DESC, MAX(id) DESC LIMIT ?",
                (command, directories),
            )
        ]
        rows = self.store.query(
            f"SELECT * FROM history WHERE cmd = ? AND {VALID_EPOCH} "
            "ORDER BY epoch DESC, id DESC LIMIT ?",
            (command, recent),
        )
        preview.recent = [HistoryEntry.from_row(r) for r in rows]
        return preview

    def preview_line(self, line: str, **kwargs) -> CommandPreview:
        """Preview for a line returned by the selector."""
        return self.preview(command_from_selector_line(line), **kwargs)
