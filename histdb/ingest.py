"""
histdb.ingest — Record one live-captured command.

A shell hook calls this once per executed command.  Low-value entries
(bare ``ls``, ``cd ..`` and the like) are dropped by a ``NoiseFilter``
unless the caller forces the write; everything else is fingerprinted and
inserted only if the fingerprint is new, so a hook that fires twice for
the same command records it once.

Storage failures never escape ``Ingestor.log``: they come back as a
``FAILED`` result the hook is free to ignore.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, FrozenSet, Iterable, Optional, Tuple

from histdb.core.errors import HistdbError, StoreBusy
from histdb.core.types import HistoryEntry, IngestResult, IngestStatus
from histdb.storage.fingerprint import fingerprint

if TYPE_CHECKING:
    from histdb.core.config import Config
    from histdb.storage.store import HistoryStore

log = logging.getLogger(__name__)

#: Commands dropped by default when they are the whole (stripped) line.
DEFAULT_IGNORE_EXACT = frozenset(
    {
        "ls",
        "ll",
        "la",
        "pwd",
        "clear",
        "exit",
        "history",
        "cd",
        "cd ..",
        "cd -",
        "cd ~",
    }
)

#: Commands dropped by default when the (stripped) line starts with them.
DEFAULT_IGNORE_PREFIX = ("histdb ",)


@dataclass(frozen=True)
class NoiseFilter:
    """Exact-match and prefix-match rules for low-value commands."""

    exact: FrozenSet[str] = field(default_factory=frozenset)
    prefixes: Tuple[str, ...] = ()
    enabled: bool = True

    @classmethod
    def from_config(cls, config: "Config") -> "NoiseFilter":
        exact = set(config.ignore_exact)
        prefixes = list(config.ignore_prefix)
        if config.use_default_ignores:
            exact |= DEFAULT_IGNORE_EXACT
            prefixes.extend(p for p in DEFAULT_IGNORE_PREFIX if p not in prefixes)
        return cls(
            exact=frozenset(exact),
            prefixes=tuple(prefixes),
            enabled=config.filter_enabled,
        )

    @classmethod
    def defaults(cls) -> "NoiseFilter":
        return cls(exact=DEFAULT_IGNORE_EXACT, prefixes=DEFAULT_IGNORE_PREFIX)

    @classmethod
    def disabled(cls) -> "NoiseFilter":
        return cls(enabled=False)

    def with_rules(
        self, exact: Iterable[str] = (), prefixes: Iterable[str] = ()
    ) -> "NoiseFilter":
        """Return a copy extended with extra rules."""
        return NoiseFilter(
            exact=self.exact | frozenset(exact),
            prefixes=self.prefixes + tuple(prefixes),
            enabled=self.enabled,
        )

    def is_noise(self, command: str) -> bool:
        if not self.enabled:
            return False
        stripped = command.strip()
        if stripped in self.exact:
            return True
        return any(stripped.startswith(p) for p in self.prefixes if p)


class Ingestor:
    """Writes live commands into a ``HistoryStore``.

    Parameters
    ----------
    store : HistoryStore
        Destination store.
    noise_filter : NoiseFilter
        Rules applied before insertion (``NoiseFilter.defaults()`` when
        omitted).
    retries : int
        How many times a ``StoreBusy`` failure is retried.
    retry_delay : float
        Base delay in seconds; attempt *n* sleeps ``n * retry_delay``.
    """

    def __init__(
        self,
        store: "HistoryStore",
        noise_filter: Optional[NoiseFilter] = None,
        retries: int = 3,
        retry_delay: float = 0.05,
    ) -> None:
        self.store = store
        self.noise_filter = noise_filter if noise_filter is not None else NoiseFilter.defaults()
        self.retries = max(0, retries)
        self.retry_delay = retry_delay

    @classmethod
    def from_config(cls, store: "HistoryStore", config: "Config") -> "Ingestor":
        return cls(
            store,
            noise_filter=config.noise_filter(),
            retries=config.write_retries,
            retry_delay=config.retry_delay,
        )

    def log(
        self,
        command: str,
        executed_at: int,
        parent_pid: int,
        working_dir: str,
        salt: int,
        session_id: Optional[int] = None,
        force: bool = False,
    ) -> IngestResult:
        """Record one command.  Never raises for storage problems."""
        if not force and self.noise_filter.is_noise(command):
            log.debug("Filtered noise command: %r", command)
            return IngestResult(IngestStatus.FILTERED)

        entry = HistoryEntry(
            command=command,
            executed_at=int(executed_at),
            parent_pid=int(parent_pid),
            working_dir=working_dir,
            salt=int(salt),
            session_id=session_id,
        )
        return self.record(entry)

    def _failure_context(self) -> dict:
        return {"status": IngestStatus.FAILED.value, "db_path": str(self.store.db_path)}

    def record(self, entry: HistoryEntry) -> IngestResult:
        """Insert an already-built entry, bypassing the noise filter."""
        fp = fingerprint(entry)
        attempt = 0
        while True:
            try:
                new_id = self.store.insert_if_absent(entry, fp)
                break
            except StoreBusy as exc:
                if attempt >= self.retries:
                    log.warning(
                        "Store busy, giving up after %d retries: %s",
                        attempt,
                        exc,
                        extra=self._failure_context(),
                    )
                    return IngestResult(IngestStatus.FAILED, fingerprint=fp, error=exc)
                attempt += 1
                time.sleep(self.retry_delay * attempt)
            except HistdbError as exc:
                log.warning(
                    "Could not record command: %s",
                    exc,
                    extra=self._failure_context(),
                )
                return IngestResult(IngestStatus.FAILED, fingerprint=fp, error=exc)

        if new_id is None:
            return IngestResult(
                IngestStatus.DUPLICATE,
                entry_id=self.store.owner_of(fp),
                fingerprint=fp,
            )
        return IngestResult(IngestStatus.INSERTED, entry_id=new_id, fingerprint=fp)
