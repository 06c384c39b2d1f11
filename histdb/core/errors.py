"""
histdb.core.errors — Error taxonomy.

Store-open and schema failures are fatal to an invocation.  Row-level
import failures (``MalformedRow``) are caught by the importers and
aggregated into counts.  A duplicate fingerprint is not an error at all;
it is reported as an ingest/import outcome.
"""

from __future__ import annotations

from typing import Optional


class HistdbError(Exception):
    """Base class for every error raised by histdb."""

    retryable: bool = False


class StorageUnavailable(HistdbError):
    """The store file cannot be opened, created, or written."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class SchemaIncompatible(StorageUnavailable):
    """The file is not a history store this version understands."""


class StoreBusy(HistdbError):
    """Lock contention outlasted the store's busy timeout.

    Safe to retry: the failed write was rolled back as a unit.
    """

    retryable = True


class MalformedRow(HistdbError, ValueError):
    """A single import row could not be interpreted."""

    def __init__(self, message: str, column: Optional[str] = None) -> None:
        super().__init__(message)
        self.column = column


class FilterConflict(HistdbError, ValueError):
    """A query filter is contradictory or missing a required value."""


class IntegrityFailure(HistdbError):
    """The store's built-in consistency check reported problems."""

    def __init__(self, messages) -> None:
        self.messages = list(messages)
        super().__init__("; ".join(self.messages) or "integrity check failed")
