"""
Connection State Machine - owns the protocol connection's lifecycle.

States:
    IDLE -> CONNECTING -> OPEN -> CLOSING ->
        RECONNECT_SCHEDULED | CREDENTIAL_WIPE_SCHEDULED | TERMINAL

The machine is synchronous and never arms timers itself. Every event
returns an Action telling the driver what to do next.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..core.exceptions import ConnectionFailure, ExitCode
from .backoff import BackoffPolicy
from .classifier import CloseEvent, ErrorCategory, classify_close, error_for_category

logger = logging.getLogger(__name__)


class ConnectionPhase(Enum):
    """Lifecycle phases of the protocol connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    CREDENTIAL_WIPE_SCHEDULED = "credential_wipe_scheduled"
    TERMINAL = "terminal"


class ActionKind(Enum):
    """What the driver must do after an event has been handled."""

    NONE = "none"
    OPENED = "opened"
    RECONNECT = "reconnect"
    WIPE_AND_RECONNECT = "wipe_and_reconnect"
    EXIT = "exit"


@dataclass(frozen=True)
class Action:
    """Decision returned by the state machine."""

    kind: ActionKind
    delay_ms: Optional[int] = None
    exit_code: Optional[ExitCode] = None
    category: Optional[ErrorCategory] = None
    error: Optional[ConnectionFailure] = None
    reason: str = ""

    @property
    def delay_seconds(self) -> float:
        return (self.delay_ms or 0) / 1000.0


NO_ACTION = Action(ActionKind.NONE)

_CONNECTABLE_FROM = frozenset({
    ConnectionPhase.IDLE,
    ConnectionPhase.RECONNECT_SCHEDULED,
    ConnectionPhase.CREDENTIAL_WIPE_SCHEDULED,
})


@dataclass
class ConnectionAttempt:
    """
    Counters that survive across reconnect cycles.

    attempt_number and stream_reset_count reset when a connection opens;
    a credential wipe zeroes everything.
    """

    attempt_number: int = 0
    stream_reset_count: int = 0
    last_connected_at: Optional[float] = None

    def connection_duration(self, now: float) -> float:
        if self.last_connected_at is None:
            return 0.0
        return max(0.0, now - self.last_connected_at)

    def is_stable(self, now: float, threshold: float) -> bool:
        return self.last_connected_at is not None and self.connection_duration(now) > threshold

    def mark_open(self, now: float) -> None:
        self.attempt_number = 0
        self.stream_reset_count = 0
        self.last_connected_at = now

    def wipe(self) -> None:
        self.attempt_number = 0
        self.stream_reset_count = 0
        self.last_connected_at = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "stream_reset_count": self.stream_reset_count,
            "last_connected_at": self.last_connected_at,
        }


@dataclass
class ConnectionStateMachineConfig:
    """Configuration for ConnectionStateMachine."""

    max_reconnect_attempts: int = 10
    max_stream_resets: int = 3
    credential_wipe_delay_ms: int = 30_000
    stability_threshold: float = 60.0  # seconds


class ConnectionStateMachine:
    """
    Decides how to react to connection events.

    Events must be delivered one at a time, in arrival order. Events that
    do not fit the current phase (a late close from an abandoned socket,
    a duplicate open) are logged and ignored.
    """

    def __init__(
        self,
        config: Optional[ConnectionStateMachineConfig] = None,
        backoff: Optional[BackoffPolicy] = None,
        attempt: Optional[ConnectionAttempt] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ConnectionStateMachineConfig()
        self.backoff = backoff or BackoffPolicy()
        self.attempt = attempt or ConnectionAttempt()
        self._clock = clock
        self._phase = ConnectionPhase.IDLE
        self.last_category: Optional[ErrorCategory] = None

        self._stats: Dict[str, int] = {
            "connects": 0,
            "opens": 0,
            "closes": 0,
            "credential_wipes": 0,
            "ignored_events": 0,
        }

    @property
    def phase(self) -> ConnectionPhase:
        return self._phase

    @property
    def is_terminal(self) -> bool:
        return self._phase is ConnectionPhase.TERMINAL

    def get_stats(self) -> Dict[str, Any]:
        """Get state machine statistics."""
        return {
            **self._stats,
            "phase": self._phase.value,
            "attempt": self.attempt.to_dict(),
        }

    def _transition(self, new_phase: ConnectionPhase) -> None:
        logger.debug(f"Connection phase {self._phase.value} -> {new_phase.value}")
        self._phase = new_phase

    def _ignore(self, event: str) -> Action:
        self._stats["ignored_events"] += 1
        logger.debug(f"Ignoring '{event}' event in phase {self._phase.value}")
        return NO_ACTION

    # -------------------------------------------------------------------------
    # EVENTS
    # -------------------------------------------------------------------------

    def begin_connecting(self) -> None:
        """Enter CONNECTING before the driver asks the client to connect."""
        if self._phase not in _CONNECTABLE_FROM:
            raise RuntimeError(f"Cannot start connecting from phase {self._phase.value}")
        self._stats["connects"] += 1
        self._transition(ConnectionPhase.CONNECTING)
        logger.info(
            f"Starting connection (attempt {self.attempt.attempt_number + 1}/"
            f"{self.config.max_reconnect_attempts})"
        )

    def on_open(self, now: Optional[float] = None) -> Action:
        """Handle the client's 'open' event."""
        if self._phase is not ConnectionPhase.CONNECTING:
            return self._ignore("open")

        now = self._clock() if now is None else now
        previous_attempts = self.attempt.attempt_number
        self.attempt.mark_open(now)
        self._stats["opens"] += 1
        self._transition(ConnectionPhase.OPEN)
        logger.info(f"Connection open after {previous_attempts} reconnect attempts")
        return Action(ActionKind.OPENED, reason=f"open after {previous_attempts} attempts")

    def on_close(self, event: Optional[CloseEvent], now: Optional[float] = None) -> Action:
        """Handle the client's 'close' event and decide what happens next."""
        if self._phase not in (ConnectionPhase.CONNECTING, ConnectionPhase.OPEN):
            return self._ignore("close")

        now = self._clock() if now is None else now
        event = event or CloseEvent()
        self._stats["closes"] += 1
        self._transition(ConnectionPhase.CLOSING)

        category = classify_close(event)
        error = error_for_category(category, event)
        self.last_category = category
        logger.warning(
            f"Connection closed: {event.message or 'no message'} "
            f"(status {event.status_code}, category {category.value}, "
            f"up {self.attempt.connection_duration(now):.0f}s, "
            f"stable {self.attempt.is_stable(now, self.config.stability_threshold)})",
            extra={
                "fields": {
                    "status_code": event.status_code,
                    "category": category.value,
                    "error": type(error).__name__,
                    "retryable": error.retryable,
                }
            },
        )

        if category is ErrorCategory.LOGGED_OUT:
            self._transition(ConnectionPhase.TERMINAL)
            logger.error("Session logged out; not reconnecting")
            return Action(
                ActionKind.EXIT,
                exit_code=ExitCode.CLEAN_LOGOUT,
                category=category,
                error=error,
                reason="logged out",
            )

        if category is ErrorCategory.STREAM_RESET:
            self.attempt.stream_reset_count += 1
            logger.warning(
                f"Stream reset {self.attempt.stream_reset_count}/{self.config.max_stream_resets}"
            )
            if self.attempt.stream_reset_count >= self.config.max_stream_resets:
                return self._schedule_wipe(category, error)

        if self.attempt.attempt_number >= self.config.max_reconnect_attempts:
            self._transition(ConnectionPhase.TERMINAL)
            logger.error(
                f"Max reconnection attempts ({self.config.max_reconnect_attempts}) reached; exiting"
            )
            return Action(
                ActionKind.EXIT,
                exit_code=ExitCode.RECONNECT_CEILING,
                category=category,
                error=error,
                reason="reconnect ceiling reached",
            )

        self.attempt.attempt_number += 1
        delay_ms = self.backoff.delay_ms(
            category,
            self.attempt.attempt_number,
            self.attempt.stream_reset_count,
        )
        self._transition(ConnectionPhase.RECONNECT_SCHEDULED)
        logger.info(
            f"Reconnecting in {delay_ms / 1000:.0f}s "
            f"(attempt {self.attempt.attempt_number}/{self.config.max_reconnect_attempts})"
        )
        return Action(
            ActionKind.RECONNECT,
            delay_ms=delay_ms,
            category=category,
            error=error,
            reason=category.value,
        )

    def _schedule_wipe(self, category: ErrorCategory, error: ConnectionFailure) -> Action:
        self.attempt.wipe()
        self._stats["credential_wipes"] += 1
        self._transition(ConnectionPhase.CREDENTIAL_WIPE_SCHEDULED)
        logger.warning(
            f"Stream reset cap reached; wiping credentials and reconnecting in "
            f"{self.config.credential_wipe_delay_ms / 1000:.0f}s"
        )
        return Action(
            ActionKind.WIPE_AND_RECONNECT,
            delay_ms=self.config.credential_wipe_delay_ms,
            category=category,
            error=error,
            reason="stream reset cap reached",
        )
