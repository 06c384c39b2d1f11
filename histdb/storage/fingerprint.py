"""
histdb.storage.fingerprint — Deterministic entry fingerprints.

The fingerprint is the deduplication key of the store: a SHA-256 over a
canonical JSON array of the identity fields::

    [executed_at, parent_pid, salt, session_id, working_dir, command]

JSON keeps the encoding unambiguous (strings are quoted, so a newline
inside ``working_dir`` can never be confused with a field boundary) and
``null`` is the one placeholder for an absent value.  Nothing here
depends on hash seeds, dict ordering, or the platform.
"""

from __future__ import annotations

import hashlib
import json
from typing import Optional

from histdb.core.types import HistoryEntry

#: Bumped whenever the canonical encoding changes; stored in ``meta``.
FINGERPRINT_SCHEME = "1"


def canonical_identity(
    command: str,
    executed_at: int,
    parent_pid: int,
    working_dir: str,
    salt: int,
    session_id: Optional[int] = None,
) -> str:
    """Return the canonical text that is hashed for an entry."""
    return json.dumps(
        [executed_at, parent_pid, salt, session_id, working_dir, command],
        ensure_ascii=False,
        separators=(",", ":"),
    )


def fingerprint_fields(
    command: str,
    executed_at: int,
    parent_pid: int,
    working_dir: str,
    salt: int,
    session_id: Optional[int] = None,
) -> str:
    """Hex SHA-256 fingerprint of the identity fields."""
    canonical = canonical_identity(
        command, executed_at, parent_pid, working_dir, salt, session_id
    )
    return hashlib.sha256(canonical.encode("utf-8", "surrogatepass")).hexdigest()


def fingerprint(entry: HistoryEntry) -> str:
    """Hex SHA-256 fingerprint of *entry* (``id`` is not part of it)."""
    return fingerprint_fields(
        entry.command,
        entry.executed_at,
        entry.parent_pid,
        entry.working_dir,
        entry.salt,
        entry.session_id,
    )
