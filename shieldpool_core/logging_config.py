"""
Structured logging configuration for ShieldPool.

Supports two output formats:
  - **human** – coloured, single-line, readable
  - **json**  – newline-delimited JSON for log aggregators

Ledger loggers attach context through ``extra=`` (``op``, ``code``,
``leaf_index``, ``token``); the JSON formatter emits those as top-level
keys and the human formatter appends them as ``key=value`` pairs.

Usage:
    from shieldpool_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="shieldpool.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Attributes every LogRecord carries; anything else came in via ``extra``.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "taskName"}


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items()
            if k not in _STANDARD_ATTRS and not k.startswith("_")}


class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in _extra_fields(record).items():
            log_obj.setdefault(key, value)
        if record.exc_info and record.exc_info[1]:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


class _HumanFormatter(logging.Formatter):
    """Coloured, concise single-line format."""

    COLOURS = {
        "DEBUG": "\033[36m",     # cyan
        "INFO": "\033[32m",      # green
        "WARNING": "\033[33m",   # yellow
        "ERROR": "\033[31m",     # red
        "CRITICAL": "\033[1;31m",  # bold red
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        extras = _extra_fields(record)
        tail = "".join(f" {k}={v}" for k, v in sorted(extras.items()))
        line = (
            f"{colour}{ts} [{record.levelname:<7}]{self.RESET} "
            f"{record.name}: {record.getMessage()}{tail}"
        )
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger for the entire application.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
    fmt : str
        ``"human"`` for coloured single-line output, ``"json"`` for
        newline-delimited JSON.
    log_file : str, optional
        If provided, logs are *also* written to this file (always in JSON
        format for machine parsing).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Drop existing handlers so repeated calls do not duplicate output
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())  # always JSON for files
        root.addHandler(fh)
