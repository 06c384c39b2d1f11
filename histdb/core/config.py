"""
histdb.core.config — Configuration for the history store.

Supports loading from YAML, a small set of environment overrides, and
programmatic construction.  The core components never read the
environment or config files themselves: the CLI builds a ``Config``
and passes the relevant values down.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

if TYPE_CHECKING:
    from histdb.ingest import NoiseFilter


#: Valid values for ``Config.session_filter_policy``.
SESSION_FILTER_POLICIES = frozenset({"reject", "ignore"})

#: Free-page ratio above which a VACUUM is recommended.
DEFAULT_VACUUM_THRESHOLD = 0.2


def default_db_path() -> Path:
    """``~/.histdb.sqlite``"""
    return Path(os.path.expanduser("~")) / ".histdb.sqlite"


@dataclass
class Config:
    """
    Central configuration object.

    Construct directly, via ``Config.from_yaml(path)``, or via
    ``Config.from_db_path(path)`` for tests and one-off scripts.
    """

    # -- storage ------------------------------------------------------------
    db_path: Path = field(default_factory=default_db_path)
    busy_timeout: float = 5.0  # seconds sqlite waits on a locked file
    write_retries: int = 3
    retry_delay: float = 0.05

    # -- noise filter -------------------------------------------------------
    filter_enabled: bool = True
    use_default_ignores: bool = True
    ignore_exact: List[str] = field(default_factory=list)
    ignore_prefix: List[str] = field(default_factory=list)

    # -- queries ------------------------------------------------------------
    default_limit: int = 100
    stats_days: int = 30
    session_filter_policy: str = "reject"  # "reject" | "ignore"

    # -- imports ------------------------------------------------------------
    synthetic_baseline: int = 0

    # -- maintenance --------------------------------------------------------
    vacuum_threshold: float = DEFAULT_VACUUM_THRESHOLD

    # -- logging ------------------------------------------------------------
    log_level: str = "WARNING"
    structured_logging: bool = False

    # -----------------------------------------------------------------------
    # Construction helpers
    # -----------------------------------------------------------------------

    def __post_init__(self) -> None:
        self.db_path = Path(os.path.expanduser(str(self.db_path))).resolve()
        if self.session_filter_policy not in SESSION_FILTER_POLICIES:
            raise ValueError(
                f"Invalid session_filter_policy {self.session_filter_policy!r}; "
                f"expected one of {sorted(SESSION_FILTER_POLICIES)}"
            )
        if self.default_limit < 0:
            raise ValueError("default_limit must be >= 0")
        if not 0.0 <= self.vacuum_threshold <= 1.0:
            raise ValueError("vacuum_threshold must be between 0 and 1")

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides: Any) -> "Config":
        """Load configuration from a YAML file.

        Keys may sit at the top level or under a ``histdb:`` section.
        Unknown keys are ignored so the file can be shared with other
        tools.
        """
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as fh:
            raw: Dict[str, Any] = yaml.safe_load(fh) or {}

        data = raw.get("histdb", raw)
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        filtered.update(overrides)

        return cls(**filtered)

    @classmethod
    def from_db_path(cls, db_path: str | Path, **overrides: Any) -> "Config":
        """Quick constructor — just point at a database file."""
        return cls(db_path=Path(db_path), **overrides)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        config_path: Optional[str | Path] = None,
    ) -> "Config":
        """Build a Config for the CLI.

        ``HISTDB_CONFIG`` (or *config_path*) names a YAML file to load;
        ``HISTDB_DB`` overrides the database path either way.
        """
        environ = os.environ if environ is None else environ

        config_path = config_path or environ.get("HISTDB_CONFIG")
        overrides: Dict[str, Any] = {}
        if environ.get("HISTDB_DB"):
            overrides["db_path"] = Path(environ["HISTDB_DB"])

        if config_path:
            return cls.from_yaml(config_path, **overrides)
        return cls(**overrides)

    # -----------------------------------------------------------------------
    # Derived values
    # -----------------------------------------------------------------------

    def noise_filter(self) -> "NoiseFilter":
        """Build the ``NoiseFilter`` Ingest should apply."""
        from histdb.ingest import NoiseFilter

        return NoiseFilter.from_config(self)

    # -----------------------------------------------------------------------
    # Serialisation
    # -----------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to a plain dict (YAML/JSON-safe)."""
        return {
            "db_path": str(self.db_path),
            "busy_timeout": self.busy_timeout,
            "write_retries": self.write_retries,
            "retry_delay": self.retry_delay,
            "filter_enabled": self.filter_enabled,
            "use_default_ignores": self.use_default_ignores,
            "ignore_exact": list(self.ignore_exact),
            "ignore_prefix": list(self.ignore_prefix),
            "default_limit": self.default_limit,
            "stats_days": self.stats_days,
            "session_filter_policy": self.session_filter_policy,
            "synthetic_baseline": self.synthetic_baseline,
            "vacuum_threshold": self.vacuum_threshold,
            "log_level": self.log_level,
            "structured_logging": self.structured_logging,
        }
