"""
Inbound Message Gate - decides which inbound messages reach the bot.

Combines the stale-message filter, the startup skip set and the session
error tracker. Session errors are handled here and never surface as
connection-level failures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..alerts import OperatorChannel, deliver, format_suspicious_activity
from .startup import StartupMessageFilter, StartupWindow
from .tracker import SessionErrorTracker, is_privacy_identifier

if TYPE_CHECKING:
    from ..connection.protocol import InboundMessage, ProtocolClient

logger = logging.getLogger(__name__)


class SessionErrorOutcome(Enum):
    """What to do with a message that failed to decrypt."""

    SKIP = "skip"
    RETRY = "retry"
    SUSPICIOUS = "suspicious"
    DROP = "drop"


@dataclass(frozen=True)
class SessionErrorResult:
    outcome: SessionErrorOutcome
    peer_id: str
    chat_id: Optional[str] = None
    reason: str = ""


class InboundMessageGate:
    """Admission control for inbound messages."""

    def __init__(
        self,
        tracker: SessionErrorTracker,
        window: StartupWindow,
        message_filter: StartupMessageFilter,
        client: Optional["ProtocolClient"] = None,
        operator_channel: Optional[OperatorChannel] = None,
        operator_recipient: Optional[str] = None,
    ):
        self.tracker = tracker
        self.window = window
        self.message_filter = message_filter
        self.client = client
        self.operator_channel = operator_channel
        self.operator_recipient = operator_recipient

        self._stats: Dict[str, int] = {
            "admitted": 0,
            "stale": 0,
            "skipped": 0,
            "session_errors": 0,
            "session_resets": 0,
            "suspicious": 0,
        }

    @property
    def during_startup(self) -> bool:
        return self.window.is_active()

    def admit(self, message: "InboundMessage") -> bool:
        """Whether a message should be handed to the bot."""
        if self.message_filter.check(message.timestamp):
            self._stats["stale"] += 1
            return False
        if self.tracker.should_skip(message.sender_id, self.during_startup):
            self._stats["skipped"] += 1
            return False
        self._stats["admitted"] += 1
        return True

    def message_processed(self, message: "InboundMessage") -> None:
        """A message from this peer decrypted and was handled."""
        self.tracker.clear_peer(message.sender_id)

    async def handle_session_error(
        self,
        peer_id: str,
        message: Optional["InboundMessage"] = None,
        error: str = "",
    ) -> SessionErrorResult:
        """
        React to a decryption failure for one peer.

        During startup the peer is skipped. Outside startup a peer that
        keeps failing gets its session reset; a group message from such a
        peer is treated as suspicious, deleted and reported.
        """
        self._stats["session_errors"] += 1
        during_startup = self.during_startup
        chat_id = message.chat_id if message else None

        if during_startup and is_privacy_identifier(peer_id):
            return SessionErrorResult(SessionErrorOutcome.SKIP, peer_id, chat_id, "privacy identifier during startup")

        logger.warning(
            f"Session error from {peer_id}"
            f"{f' in {chat_id}' if chat_id else ''}: {error or 'decryption failed'}"
            f"{' (startup)' if during_startup else ''}"
        )

        problematic = self.tracker.track_error(peer_id, during_startup)
        if during_startup:
            if problematic:
                logger.info(f"Skipping problematic peer during startup: {peer_id}")
            return SessionErrorResult(SessionErrorOutcome.SKIP, peer_id, chat_id, "startup")

        if problematic:
            await self._reset_peer_session(peer_id)

        message_id = message.message_id if message else ""
        if not self.tracker.should_retry_message(message_id, peer_id):
            return SessionErrorResult(SessionErrorOutcome.DROP, peer_id, chat_id, "retries exhausted")

        if message is not None and message.is_group and problematic:
            self._stats["suspicious"] += 1
            logger.warning(f"Suspicious activity from {peer_id}: session errors in group {chat_id}")
            await self._handle_suspicious(peer_id, message)
            return SessionErrorResult(
                SessionErrorOutcome.SUSPICIOUS,
                peer_id,
                chat_id,
                "multiple session errors in group context",
            )

        logger.info(f"Retrying message {message_id} from {peer_id}")
        return SessionErrorResult(SessionErrorOutcome.RETRY, peer_id, chat_id)

    async def _reset_peer_session(self, peer_id: str) -> None:
        if self.client is None:
            return
        logger.info(f"Attempting session reset for problematic peer: {peer_id}")
        try:
            await self.client.reset_peer_session(peer_id)
        except Exception as e:
            logger.error(f"Failed to reset session for {peer_id}: {e}")
            return
        self._stats["session_resets"] += 1

    async def _handle_suspicious(self, peer_id: str, message: "InboundMessage") -> None:
        if self.client is not None:
            try:
                await self.client.delete_message(message.chat_id, message.message_id, peer_id)
            except Exception as e:
                logger.warning(f"Could not delete suspicious message {message.message_id}: {e}")
        await deliver(
            self.operator_channel,
            self.operator_recipient,
            format_suspicious_activity(peer_id, message.chat_id, self.tracker.error_count(peer_id)),
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get gate statistics."""
        return {
            **self._stats,
            "during_startup": self.during_startup,
            "discarded_stale_total": self.message_filter.discarded,
            "tracker": self.tracker.get_stats(),
        }
