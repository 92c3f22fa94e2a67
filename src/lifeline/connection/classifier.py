"""
Close-event classification.

Maps a raw close event from the protocol client onto one of a fixed set of
categories. Rules are checked in priority order and the first match wins:

1. STREAM_RESET - protocol stream-error marker or the transient 515 status
2. SESSION_CONFLICT - another session replaced this one (status 440)
3. LOGGED_OUT - the library's canonical logged-out status (401)
4. OTHER - everything else

Classification is total: malformed input classifies as OTHER.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..core.exceptions import (
    AuthenticationExpired,
    ConnectionFailure,
    TransientProtocolError,
    UnclassifiedError,
)

logger = logging.getLogger(__name__)

STREAM_RESET_STATUS = 515
SESSION_CONFLICT_STATUS = 440
LOGGED_OUT_STATUS = 401

_STREAM_RESET_MARKERS = ("515", "stream:error", "stream errored")
_CONFLICT_MARKERS = ("conflict", "replaced")


class ErrorCategory(Enum):
    """Categories a close event can fall into."""

    STREAM_RESET = "stream_reset"
    SESSION_CONFLICT = "session_conflict"
    LOGGED_OUT = "logged_out"
    OTHER = "other"


@dataclass(frozen=True)
class CloseEvent:
    """Descriptor of a protocol-level close."""

    status_code: int | None = None
    message: str = ""
    error_code: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CloseEvent":
        status = data.get("status_code")
        return cls(
            status_code=int(status) if status is not None else None,
            message=str(data.get("message") or ""),
            error_code=str(data["error_code"]) if data.get("error_code") is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status_code": self.status_code,
            "message": self.message,
            "error_code": self.error_code,
        }


def _status_equals(status: Any, expected: int) -> bool:
    try:
        return status is not None and int(status) == expected
    except (TypeError, ValueError):
        return False


def classify_close(event: CloseEvent | None) -> ErrorCategory:
    """
    Classify a close event.

    Args:
        event: The close descriptor (may be None or partially populated)

    Returns:
        The matching ErrorCategory, OTHER when nothing matches
    """
    if event is None:
        return ErrorCategory.OTHER

    try:
        text = str(event.message or "").lower()
        status = event.status_code

        if (
            _status_equals(status, STREAM_RESET_STATUS)
            or str(event.error_code) == str(STREAM_RESET_STATUS)
            or any(marker in text for marker in _STREAM_RESET_MARKERS)
        ):
            return ErrorCategory.STREAM_RESET

        if _status_equals(status, SESSION_CONFLICT_STATUS) or any(
            marker in text for marker in _CONFLICT_MARKERS
        ):
            return ErrorCategory.SESSION_CONFLICT

        if _status_equals(status, LOGGED_OUT_STATUS):
            return ErrorCategory.LOGGED_OUT
    except Exception as e:
        logger.debug(f"Unclassifiable close event {event!r}: {e}")

    return ErrorCategory.OTHER


def error_for_category(category: ErrorCategory, event: CloseEvent) -> ConnectionFailure:
    """Build the taxonomy exception describing a classified close."""
    message = event.message or category.value
    if category in (ErrorCategory.STREAM_RESET, ErrorCategory.SESSION_CONFLICT):
        return TransientProtocolError(message, event.status_code, event.error_code)
    if category is ErrorCategory.LOGGED_OUT:
        return AuthenticationExpired(message, event.status_code, event.error_code)
    return UnclassifiedError(message, event.status_code, event.error_code)
