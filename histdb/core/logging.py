"""
histdb.core.logging — Log setup for the CLI and embedding applications.

Every module logs through ``logging.getLogger(__name__)`` under the
``histdb`` namespace.  ``configure_logging`` sets the level of that
namespace and, with ``structured=True``, switches it to JSON lines::

    from histdb.core.logging import configure_logging

    configure_logging(structured=True, level="INFO")

Importers and Ingest attach their counts through ``extra=`` (see
``CONTEXT_FIELDS``); the JSON formatter lifts those into the record so
an import run can be summarised by a log collector without parsing
message text.
"""

from __future__ import annotations

import json
import logging
from typing import IO, Optional

#: ``extra=`` keys copied into structured records when present.
CONTEXT_FIELDS = (
    "db_path",
    "source",
    "dialect",
    "inserted",
    "duplicates",
    "malformed",
    "status",
)

#: Format used for human-readable output.
HUMAN_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Always present: ``ts``, ``level``, ``logger``, ``msg``, ``module``,
    ``func``, ``line``.  Any ``CONTEXT_FIELDS`` set on the record follow,
    and ``exception`` carries the traceback when there is one.
    """

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S")
            + f".{int(record.msecs):03d}",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                data[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            data["exception"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str, ensure_ascii=False)


def configure_logging(
    structured: bool = False,
    level: str = "WARNING",
    logger_name: str = "histdb",
    stream: Optional[IO[str]] = None,
) -> logging.Logger:
    """Set up the ``histdb`` logger and return it.

    With ``structured=False`` only the level changes and records reach
    whatever handlers the host application installed.  With
    ``structured=True`` the namespace gets its own JSON handler on
    *stream* (stderr by default) and stops propagating, so records are
    not printed twice.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level.upper(), logging.WARNING))

    if structured:
        logger.handlers.clear()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        logger.propagate = False

    return logger
