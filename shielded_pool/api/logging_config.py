"""
Logging setup shared by the API, the synchronizer and the CLI.

Every module asks for a named logger through ``get_logger``; loggers live under
the ``shielded_pool`` namespace so one call to ``setup_logging`` configures them
all.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from shielded_pool import config

ROOT_LOGGER_NAME = "shielded_pool"

_configured = False


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> logging.Logger:
    """
    Configure the package root logger (idempotent).

    Args:
        level: Log level name, defaults to LOG_LEVEL
        fmt: "text" or "json", defaults to LOG_FORMAT

    Returns:
        The configured root package logger
    """
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel((level or config.LOG_LEVEL).upper())

    if not _configured:
        handler = logging.StreamHandler(sys.stderr)
        if (fmt or config.LOG_FORMAT) == "json":
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
            )
        root.addHandler(handler)
        root.propagate = False
        _configured = True

    return root


def get_logger(name: str) -> logging.Logger:
    """Named logger under the package namespace, e.g. get_logger("asp.service")"""
    if name.startswith(ROOT_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
