"""
Logging configuration for the stake ledger service.

Two output formats:
  - **human** – coloured, single-line, readable
  - **json**  – newline-delimited JSON for log aggregators

Usage:
    from metanode_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="metanode.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Module loggers owned by the ledger, adjustable at runtime.
LEDGER_LOGGERS: tuple[str, ...] = (
    "metanode_staking",
    "metanode_transfers",
    "metanode_access",
    "metanode_events",
    "metanode_storage",
    "metanode_api",
    "metanode",
)

VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class _JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


class _HumanFormatter(logging.Formatter):

    COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True) -> None:
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        if self.colour:
            colour, reset = self.COLOURS.get(record.levelname, ""), self.RESET
        else:
            colour = reset = ""
        line = (
            f"{colour}{ts} [{record.levelname:<7}]{reset} "
            f"{record.name}: {record.getMessage()}"
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
    Configure the root logger for the service.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
    fmt : str
        ``"human"`` or ``"json"``.
    log_file : str, optional
        Also write to this file, always as JSON.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter(colour=sys.stderr.isatty()))
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())
        root.addHandler(fh)


def set_ledger_log_level(level: str) -> str:
    """Change the level of every ledger logger; return the normalised name."""
    name = level.upper()
    if name not in VALID_LEVELS:
        raise ValueError(f"Invalid level {level!r}; use one of {sorted(VALID_LEVELS)}")
    for logger_name in LEDGER_LOGGERS:
        logging.getLogger(logger_name).setLevel(getattr(logging, name))
    return name
