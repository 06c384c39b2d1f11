"""Shared fixtures for histdb tests."""

import sqlite3

import pytest

from histdb.core.config import Config
from histdb.core.types import HistoryEntry
from histdb.ingest import Ingestor, NoiseFilter
from histdb.query.engine import QueryEngine
from histdb.storage.store import HistoryStore


LEGACY_SCHEMA = """
CREATE TABLE history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  hist_id INTEGER,
  cmd TEXT,
  epoch INTEGER,
  ppid INTEGER,
  pwd TEXT,
  salt INTEGER
);
"""


def _make_legacy_db(path, rows):
    """Create a dbhist-style file holding only a history table.

    *rows* are ``(hist_id, cmd, epoch, ppid, pwd, salt)`` tuples; values
    are stored as given, so text can sit in numeric columns.
    """
    conn = sqlite3.connect(str(path))
    conn.executescript(LEGACY_SCHEMA)
    conn.executemany(
        "INSERT INTO history(hist_id, cmd, epoch, ppid, pwd, salt) VALUES (?,?,?,?,?,?)",
        rows,
    )
    conn.commit()
    conn.close()
    return path


def _entry(command="echo hi", executed_at=1700000000, parent_pid=100,
          working_dir="/tmp", salt=7, session_id=None):
    return HistoryEntry(
        command=command,
        executed_at=executed_at,
        parent_pid=parent_pid,
        working_dir=working_dir,
        salt=salt,
        session_id=session_id,
    )


@pytest.fixture
def config(tmp_path):
    """Provide a Config pointing at a temp database."""
    return Config.from_db_path(tmp_path / "history.sqlite")


@pytest.fixture
def store(config):
    """Provide a fresh HistoryStore."""
    s = HistoryStore.open(config.db_path)
    yield s
    s.close()


@pytest.fixture
def ingestor(store):
    """Ingestor with the noise filter switched off."""
    return Ingestor(store, noise_filter=NoiseFilter.disabled())


@pytest.fixture
def engine(store):
    return QueryEngine(store)


@pytest.fixture
def make_entry():
    """Factory for HistoryEntry values with sensible defaults."""
    return _entry


@pytest.fixture
def make_legacy_db():
    """Factory creating a legacy history-only database file."""
    return _make_legacy_db
