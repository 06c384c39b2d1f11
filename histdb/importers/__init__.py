"""histdb.importers — Merge foreign databases and shell history files."""

from histdb.importers.history_file import HistoryDialect, HistoryFileImporter
from histdb.importers.merge import import_database, merge_sources

__all__ = ["HistoryDialect", "HistoryFileImporter", "import_database", "merge_sources"]
