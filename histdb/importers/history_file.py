"""
histdb.importers.history_file — Import plain-text shell history files.

Two dialects are understood, chosen by the caller (the format is never
sniffed):

``HistoryDialect.BASH``
    Timestamp-comment format written by bash with ``HISTTIMEFORMAT``
    set::

        #1700000000
        git status

    A ``#<epoch>`` marker dates the command on the next line.  Commands
    without a marker get a *synthetic* timestamp: a counter seeded at the
    latest real epoch seen so far (or the caller's baseline before any
    marker) and advanced by one per undated command.  Relative order
    survives: synthetic values never repeat, never fall behind a real
    timestamp already seen in the file, and commands before the first
    marker always stay below that marker's epoch.

``HistoryDialect.ZSH``
    zsh ``EXTENDED_HISTORY`` format::

        : 1700000000:0;git status

    The duration field is discarded.  Backslash-newline continuations are
    joined into one multi-line command.  Lines without the ``: epoch:dur;``
    prefix are counted as malformed and skipped.

Files carry no per-line directory, so every entry of a file gets the
caller's ``working_dir``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

from histdb.core.types import HistoryEntry, ImportReport

if TYPE_CHECKING:
    from histdb.storage.store import HistoryStore

log = logging.getLogger(__name__)

_BASH_STAMP_RE = re.compile(r"^#(\d+)\s*$")
_ZSH_EXTENDED_RE = re.compile(r"^:\s*(\d+):(\d+);(.*)$", re.DOTALL)

# zsh escapes bytes >= 0x83 in its history file as META, byte ^ 0x20.
_ZSH_META = 0x83


class HistoryDialect(str, Enum):
    BASH = "bash"
    ZSH = "zsh"


@dataclass
class ParsedCommand:
    """One command recovered from a history file."""

    command: str
    executed_at: int
    synthetic: bool = False
    line_no: int = 0


@dataclass
class ParseResult:
    commands: List[ParsedCommand] = field(default_factory=list)
    malformed: int = 0


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _settle_leading(commands: List[ParsedCommand], first_real: int, counter: int) -> int:
    """Keep undated commands that precede the first marker below it.

    *commands* holds only synthetic stamps at this point.  When the
    baseline pushed them to or past *first_real* they are renumbered to
    end just under it.  Returns the counter to continue from.
    """
    if not commands or commands[-1].executed_at < first_real:
        return counter
    n = len(commands)
    for i, cmd in enumerate(commands):
        cmd.executed_at = first_real - n + i
    return first_real - 1


def parse_bash(lines: Iterable[str], baseline: int = 0) -> ParseResult:
    """Parse timestamp-comment (bash) history lines.

    A marker that is not followed by a command (two markers in a row, or
    one at the end of the file) counts as malformed.
    """
    result = ParseResult()
    counter = baseline
    pending: Optional[int] = None
    seen_real = False

    for line_no, line in enumerate(lines, start=1):
        line = line.rstrip("\r")
        m = _BASH_STAMP_RE.match(line)
        if m:
            if pending is not None:
                result.malformed += 1
            pending = int(m.group(1))
            continue
        if not line.strip():
            continue

        if pending is not None:
            if not seen_real:
                counter = _settle_leading(result.commands, pending, counter)
                seen_real = True
            executed_at = pending
            counter = max(counter, pending)
            pending = None
            synthetic = False
        else:
            counter += 1
            executed_at = counter
            synthetic = True

        result.commands.append(
            ParsedCommand(line, executed_at, synthetic=synthetic, line_no=line_no)
        )

    if pending is not None:
        result.malformed += 1
    return result


def parse_zsh(lines: Iterable[str], baseline: int = 0) -> ParseResult:
    """Parse zsh extended-history lines.  *baseline* is unused."""
    result = ParseResult()
    buffer: Optional[str] = None
    start_line = 0

    def flush(record: str, line_no: int) -> None:
        m = _ZSH_EXTENDED_RE.match(record)
        if not m:
            result.malformed += 1
            log.debug("Skipping malformed zsh history line %d: %r", line_no, record[:80])
            return
        result.commands.append(
            ParsedCommand(m.group(3), int(m.group(1)), line_no=line_no)
        )

    for line_no, line in enumerate(lines, start=1):
        line = line.rstrip("\r")
        if buffer is None:
            if not line.strip():
                continue
            buffer = line
            start_line = line_no
        else:
            buffer += "\n" + line

        if buffer.endswith("\\"):
            buffer = buffer[:-1]
            continue

        flush(buffer, start_line)
        buffer = None

    if buffer is not None:
        flush(buffer, start_line)
    return result


PARSERS: Dict[HistoryDialect, Callable[[Iterable[str], int], ParseResult]] = {
    HistoryDialect.BASH: parse_bash,
    HistoryDialect.ZSH: parse_zsh,
}


def parse_history(
    lines: Iterable[str], dialect: HistoryDialect, baseline: int = 0
) -> ParseResult:
    return PARSERS[HistoryDialect(dialect)](lines, baseline)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def unmetafy(data: bytes) -> bytes:
    """Undo zsh's history-file byte escaping."""
    if bytes([_ZSH_META]) not in data:
        return data
    out = bytearray()
    it = iter(data)
    for byte in it:
        if byte == _ZSH_META:
            nxt = next(it, None)
            if nxt is None:
                break
            out.append(nxt ^ 0x20)
        else:
            out.append(byte)
    return bytes(out)


def decode_history(data: bytes, dialect: HistoryDialect) -> List[str]:
    """Decode raw file bytes into lines (invalid UTF-8 is replaced)."""
    if HistoryDialect(dialect) is HistoryDialect.ZSH:
        data = unmetafy(data)
    text = data.decode("utf-8", errors="replace")
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------


class HistoryFileImporter:
    """Feeds parsed history files through the store's dedup path."""

    def __init__(self, store: "HistoryStore", baseline: int = 0) -> None:
        self.store = store
        self.baseline = baseline

    def import_file(
        self,
        path: Path | str,
        dialect: HistoryDialect,
        working_dir: str,
        parent_pid: int = 0,
        salt: int = 0,
    ) -> ImportReport:
        """Import one history file.  Raises ``OSError`` if it cannot be read."""
        path = Path(path)
        lines = decode_history(path.read_bytes(), dialect)
        return self.import_lines(
            lines,
            dialect,
            working_dir,
            parent_pid=parent_pid,
            salt=salt,
            source=str(path),
        )

    def import_lines(
        self,
        lines: Iterable[str],
        dialect: HistoryDialect,
        working_dir: str,
        parent_pid: int = 0,
        salt: int = 0,
        source: str = "<lines>",
    ) -> ImportReport:
        if not working_dir:
            raise ValueError("working_dir is required for history-file imports")

        parsed = parse_history(lines, dialect, self.baseline)
        report = ImportReport(source=source, malformed=parsed.malformed)

        with self.store.batch():
            for cmd in parsed.commands:
                entry = HistoryEntry(
                    command=cmd.command,
                    executed_at=cmd.executed_at,
                    parent_pid=parent_pid,
                    working_dir=working_dir,
                    salt=salt,
                )
                if self.store.insert_if_absent(entry) is None:
                    report.duplicates += 1
                else:
                    report.inserted += 1

        log.info(
            "Imported %s (%s): inserted %d, duplicates %d, malformed %d",
            source,
            HistoryDialect(dialect).value,
            report.inserted,
            report.duplicates,
            report.malformed,
            extra=dict(report.to_dict(), dialect=HistoryDialect(dialect).value),
        )
        return report
