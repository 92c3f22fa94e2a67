# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Custom exception hierarchy for Lifeline.

Provides specific exception types for each failure class the resilience
subsystem reasons about, so callers can tell a retryable protocol hiccup
from a failure that must end the process.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class ExitCode(IntEnum):
    """Process exit codes shared with the external process supervisor."""

    CLEAN_LOGOUT = 0
    RECONNECT_CEILING = 1
    EMERGENCY_STOP = 42


class LifelineException(Exception):  # noqa: N818
    """Base exception for all Lifeline errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# CONNECTION-LEVEL FAILURES
# =============================================================================


class ConnectionFailure(LifelineException):
    """A close event of the shared protocol connection.

    Carries the raw status code and message of the close event that
    produced it.
    """

    retryable: bool = True

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if error_code is not None:
            details["error_code"] = error_code
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code


class TransientProtocolError(ConnectionFailure):
    """Stream reset or session conflict. Retried automatically."""

    pass


class AuthenticationExpired(ConnectionFailure):
    """The session was logged out. Terminal, never retried."""

    retryable = False


class UnclassifiedError(ConnectionFailure):
    """Any other close. Retried with bounded exponential backoff."""

    pass


# =============================================================================
# SUPERVISION FAILURES
# =============================================================================


class SupervisionFailure(LifelineException):
    """A failure that must be escalated to process exit.

    Raised when:
    - The restart rate constitutes a crash loop
    - An unexpired emergency stop flag blocks startup
    - The daily restart quota is exhausted past its safety margin
    - Another live instance already holds the instance lock
    """

    exit_code: ExitCode = ExitCode.EMERGENCY_STOP

    def __init__(self, message: str, details: dict | None = None, exit_code: ExitCode | None = None):
        super().__init__(message, details)
        if exit_code is not None:
            self.exit_code = exit_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["exit_code"] = int(self.exit_code)
        return data


class CrashLoopDetected(SupervisionFailure):
    """Restart storm detected; the emergency flag has been written."""

    def __init__(self, reason: str, restart_count: int):
        super().__init__(
            f"Crash loop detected: {reason}",
            {"reason": reason, "restart_count": restart_count},
        )
        self.reason = reason
        self.restart_count = restart_count


class EmergencyStopActive(SupervisionFailure):
    """An unexpired emergency stop flag refuses startup."""

    def __init__(self, reason: str, flag_age_seconds: float):
        super().__init__(
            f"Emergency stop flag present ({flag_age_seconds:.0f}s old): {reason}",
            {"reason": reason, "flag_age_seconds": flag_age_seconds},
        )
        self.reason = reason
        self.flag_age_seconds = flag_age_seconds


class InstanceLockedError(SupervisionFailure):
    """Another live instance holds the instance lock."""

    exit_code = ExitCode.RECONNECT_CEILING

    def __init__(self, lock_path: str, owner: dict | None = None):
        owner = owner or {}
        super().__init__(
            f"Another instance is already running (pid {owner.get('pid', '?')})",
            {"lock_path": lock_path, "owner": owner},
        )
        self.lock_path = lock_path
        self.owner = owner


# =============================================================================
# LOCAL FAILURES
# =============================================================================


class PeerSessionError(LifelineException):
    """Decryption/session failure for a single counterpart.

    Contained locally; never escalated to connection-level action.
    """

    def __init__(self, peer_id: str, message: str = "session error", message_id: str | None = None):
        details = {"peer_id": peer_id}
        if message_id:
            details["message_id"] = message_id
        super().__init__(message, details)
        self.peer_id = peer_id
        self.message_id = message_id


class StoreError(LifelineException):
    """Durable store read/write failure."""

    def __init__(self, message: str, path: str | None = None):
        details = {}
        if path:
            details["path"] = path
        super().__init__(message, details)
        self.path = path
