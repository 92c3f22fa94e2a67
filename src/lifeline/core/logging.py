# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Logging setup for the resilience runtime.

Lines logged while a connection attempt is in flight carry that attempt's
connection ID and attempt number, so one reconnect cycle can be followed
across modules. JSON lines also carry the process ID, which is what the
restart ledgers record for each start.

Structured fields can be attached with ``extra={"fields": {...}}``; the JSON
formatter emits them under ``fields`` and the text formatter appends them
as ``key=value`` pairs.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

_connection_id: ContextVar[str | None] = ContextVar("connection_id", default=None)
_attempt: ContextVar[int | None] = ContextVar("connection_attempt", default=None)

NOISY_LOGGERS = ("aiohttp", "asyncio")


def new_connection_id() -> str:
    """Short random ID for one connection attempt."""
    return uuid.uuid4().hex[:12]


def get_connection_id() -> str | None:
    return _connection_id.get()


def get_attempt() -> int | None:
    return _attempt.get()


def bind_connection(connection_id: str | None, attempt: int | None = None) -> None:
    """Tag subsequent log lines in this context with a connection attempt.

    Passing None clears the tag.
    """
    _connection_id.set(connection_id)
    _attempt.set(attempt if connection_id is not None else None)


@contextmanager
def connection_scope(
    connection_id: str | None = None,
    attempt: int | None = None,
) -> Generator[str, None, None]:
    """Bind a connection attempt for the duration of a block.

    Yields:
        The connection ID in effect (generated when not given).
    """
    cid = connection_id or new_connection_id()
    id_token = _connection_id.set(cid)
    attempt_token = _attempt.set(attempt)
    try:
        yield cid
    finally:
        _attempt.reset(attempt_token)
        _connection_id.reset(id_token)


def _connection_tag(record: logging.LogRecord) -> tuple[str | None, int | None]:
    connection_id = getattr(record, "connection_id", None) or get_connection_id()
    attempt = getattr(record, "attempt", None)
    if attempt is None:
        attempt = get_attempt()
    return connection_id, attempt


class ConnectionContextFilter(logging.Filter):
    """Stamps the bound connection attempt onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.connection_id, record.attempt = _connection_tag(record)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers and log files."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "pid": record.process,
            "msg": record.getMessage(),
        }

        connection_id, attempt = _connection_tag(record)
        if connection_id:
            entry["connection_id"] = connection_id
        if attempt is not None:
            entry["attempt"] = attempt

        if record.levelno >= logging.ERROR:
            entry["where"] = f"{record.module}.{record.funcName}:{record.lineno}"

        fields = getattr(record, "fields", None)
        if fields:
            entry["fields"] = fields

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class StandardFormatter(logging.Formatter):
    """Readable single-line format for terminals."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    DIM = "\033[90m"
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__(datefmt="%H:%M:%S")
        self.use_colors = use_colors and sys.stderr.isatty()

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{self.RESET}" if self.use_colors else text

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            self.formatTime(record, self.datefmt),
            self._paint(f"{record.levelname:<8}", self.LEVEL_COLORS.get(record.levelno, "")),
            record.name,
        ]

        connection_id, attempt = _connection_tag(record)
        if connection_id:
            tag = f"[{connection_id[:8]}" + (f" #{attempt}]" if attempt is not None else "]")
            parts.append(self._paint(tag, self.DIM))

        line = " ".join(parts) + " " + record.getMessage()

        fields = getattr(record, "fields", None)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: str | int | None = None,
    json_format: bool | None = None,
    log_file: str | None = None,
) -> None:
    """Install the root handlers.

    Args:
        level: Log level name or number (LIFELINE_LOG_LEVEL when None)
        json_format: JSON lines on stderr; when None, LIFELINE_LOG_FORMAT
            decides ("json" or "text") and otherwise JSON is used unless
            stderr is a terminal
        log_file: Extra JSON log file (LIFELINE_LOG_FILE when None)
    """
    from .config import get_config

    config = get_config()

    level = config.log_level if level is None else level
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if json_format is None:
        log_format = config.log_format.lower()
        json_format = log_format == "json" or (log_format != "text" and not sys.stderr.isatty())

    log_file = config.log_file if log_file is None else log_file

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    context_filter = ConnectionContextFilter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(JSONFormatter() if json_format else StandardFormatter())
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
