"""
histdb.query.filters — The filter model shared by every read path.

A ``HistoryFilter`` carries:

- a time bound: trailing ``since_days`` *or* absolute ``since_epoch``;
- a location scope: exactly one directory (``HERE``) or a directory and
  everything below it (``UNDER``);
- a session scope: the ``(salt, parent_pid)`` pair of the invoking shell;
- a result cap (``limit``/``offset``) that ``unlimited`` removes.

Validation runs before any SQL is built.  A session scope missing either
value is a ``FilterConflict`` under the ``"reject"`` policy and is dropped
(with a warning) under ``"ignore"``; it is never matched against partial
data.  Zero is a legitimate salt or pid.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple

from histdb.core.errors import FilterConflict

log = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

#: Read paths only see rows with a real integer timestamp.
VALID_EPOCH = "typeof(epoch) = 'integer'"


def escape_like(text: str, escape: str = "\\") -> str:
    """Escape LIKE wildcards (and the escape character) in *text*."""
    return (
        text.replace(escape, escape + escape)
        .replace("%", escape + "%")
        .replace("_", escape + "_")
    )


class LocationMode(str, Enum):
    HERE = "here"
    UNDER = "under"


@dataclass(frozen=True)
class LocationScope:
    """Restrict results to one directory, or a directory tree."""

    directory: str
    mode: LocationMode = LocationMode.HERE

    def clause(self) -> Tuple[str, List]:
        base = self.directory.rstrip("/")
        if LocationMode(self.mode) is LocationMode.HERE:
            return "pwd = ?", [base or "/"]
        return (
            "(pwd = ? OR pwd LIKE ? ESCAPE '\\')",
            [base or "/", escape_like(base) + "/%"],
        )


@dataclass(frozen=True)
class SessionScope:
    """The invoking shell's identity; either value may be unknown."""

    salt: Optional[int] = None
    parent_pid: Optional[int] = None

    @property
    def complete(self) -> bool:
        return self.salt is not None and self.parent_pid is not None


@dataclass
class HistoryFilter:
    """Filter and cap applied by every ``QueryEngine`` read."""

    since_days: Optional[float] = None
    since_epoch: Optional[int] = None
    location: Optional[LocationScope] = None
    session: Optional[SessionScope] = None
    limit: int = 100
    offset: int = 0
    unlimited: bool = False
    now: Callable[[], float] = field(default=time.time, repr=False, compare=False)

    # -- validation ---------------------------------------------------------

    def validated(self, session_policy: str = "reject") -> "HistoryFilter":
        """Return a checked filter, or raise ``FilterConflict``.

        Under the ``"ignore"`` session policy an incomplete session scope
        is removed from the returned copy instead of raising.
        """
        if self.since_days is not None and self.since_epoch is not None:
            raise FilterConflict("since_days and since_epoch are mutually exclusive")
        if self.since_days is not None and self.since_days < 0:
            raise FilterConflict("since_days must be >= 0")
        if self.limit < 0 or self.offset < 0:
            raise FilterConflict("limit and offset must be >= 0")
        if self.location is not None and not self.location.directory:
            raise FilterConflict("location filter needs a directory")

        if self.session is not None and not self.session.complete:
            missing = "salt" if self.session.salt is None else "parent pid"
            if session_policy == "reject":
                raise FilterConflict(
                    f"session filter requires both salt and parent pid; {missing} missing"
                )
            log.warning("Ignoring session filter: %s missing", missing)
            return replace(self, session=None)
        return self

    # -- SQL ----------------------------------------------------------------

    def lower_bound(self) -> Optional[int]:
        if self.since_epoch is not None:
            return int(self.since_epoch)
        if self.since_days is not None:
            return int(self.now() - self.since_days * SECONDS_PER_DAY)
        return None

    def where(self) -> Tuple[str, List]:
        """Return ``(sql, params)`` for a WHERE clause.

        Rows whose ``epoch`` is not an integer (text left behind by older
        tools) are never returned: they cannot be ordered, bounded or
        bucketed by day.
        """
        clauses: List[str] = [VALID_EPOCH]
        params: List = []

        bound = self.lower_bound()
        if bound is not None:
            clauses.append("epoch >= ?")
            params.append(bound)

        if self.location is not None:
            sql, loc_params = self.location.clause()
            clauses.append(sql)
            params.extend(loc_params)

        if self.session is not None:
            clauses.append("salt = ? AND ppid = ?")
            params.extend([self.session.salt, self.session.parent_pid])

        return " AND ".join(clauses), params

    def limit_clause(self) -> Tuple[str, List]:
        """``LIMIT ? OFFSET ?`` or, when unlimited, only the offset."""
        if self.unlimited:
            if self.offset:
                return "LIMIT -1 OFFSET ?", [self.offset]
            return "", []
        return "LIMIT ? OFFSET ?", [self.limit, self.offset]
