"""
strata.core.logging — Structured logging support.

Provides a JSON formatter for stdlib logging.  When enabled, all
strata loggers emit machine-parseable JSON lines instead of
human-readable text, which is what the scheduled consolidation job
and the governor's route handlers ship to log aggregation.

Usage::

    from strata.core.logging import configure_logging

    configure_logging(structured=True, level="INFO")

Extra context passed through ``extra={"org": ..., "route": ...}``
is copied into the JSON object.
"""

from __future__ import annotations

import json
import logging

# Attributes present on every LogRecord; anything else came from ``extra``.
_RESERVED = frozenset(
    vars(logging.LogRecord("x", logging.INFO, "x", 0, "", (), None)).keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Fields emitted: ``ts``, ``level``, ``logger``, ``msg``, ``module``,
    ``func``, ``line``, any ``extra`` keys, and ``exception`` when the
    record carries exc_info.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S")
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_logging(
    structured: bool = False,
    level: str = "INFO",
    logger_name: str = "strata",
) -> None:
    """Configure strata's logging subsystem.

    Parameters
    ----------
    structured:
        When True, all strata loggers emit JSON lines via
        ``StructuredFormatter``.  When False, stdlib defaults apply.
    level:
        Log level (``"DEBUG"``, ``"INFO"``, ``"WARNING"``, etc.).
    logger_name:
        Root logger name to configure (default ``"strata"``).
    """
    root = logging.getLogger(logger_name)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if structured:
        root.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter())
        root.addHandler(handler)
        # no duplicate output through the application's root handler
        root.propagate = False
