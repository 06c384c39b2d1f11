"""histdb.query — Filtered read views."""

from histdb.query.engine import QueryEngine
from histdb.query.filters import HistoryFilter, LocationMode, LocationScope, SessionScope

__all__ = ["QueryEngine", "HistoryFilter", "LocationMode", "LocationScope", "SessionScope"]
