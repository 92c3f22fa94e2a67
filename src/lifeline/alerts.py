# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""
Operator alerts.

Formats the messages sent to the operator (crash-loop alerts, restart
notices, suspicious activity reports) and delivers them over an
OperatorChannel. Delivery failures are logged and never propagate: an
alert must not take the connection down with it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

import aiohttp

from .core.exceptions import LifelineException

if TYPE_CHECKING:
    from .connection.protocol import ProtocolClient
    from .supervision.crash_loop import CrashLoopStatus

logger = logging.getLogger(__name__)


class AlertDeliveryError(LifelineException):
    """An operator channel could not deliver a message."""

    pass


@runtime_checkable
class OperatorChannel(Protocol):
    """Somewhere operator messages can be sent."""

    async def send(self, recipient: str, text: str) -> None: ...


class ProtocolOperatorChannel:
    """Sends operator messages through the open protocol connection."""

    def __init__(self, client: "ProtocolClient"):
        self.client = client

    async def send(self, recipient: str, text: str) -> None:
        await self.client.send_text(recipient, text)


class WebhookOperatorChannel:
    """POSTs operator messages as JSON to a webhook."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def send(self, recipient: str, text: str) -> None:
        payload = {"recipient": recipient, "text": text}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload) as resp:
                    if resp.status >= 300:
                        raise AlertDeliveryError(
                            f"Webhook returned HTTP {resp.status}",
                            {"url": self.url, "status": resp.status},
                        )
        except aiohttp.ClientError as e:
            raise AlertDeliveryError(f"Webhook request failed: {e}", {"url": self.url}) from e


async def deliver(channel: Optional[OperatorChannel], recipient: Optional[str], text: str) -> bool:
    """
    Send a message to the operator.

    Returns:
        True if the channel accepted the message
    """
    if channel is None or not recipient:
        logger.debug("No operator channel configured; alert not sent")
        return False
    try:
        await channel.send(recipient, text)
    except Exception as e:
        logger.error(f"Failed to send operator alert: {e}")
        return False
    logger.info(f"Operator alert sent to {recipient}")
    return True


def _clock_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%H:%M:%S")


# =============================================================================
# MESSAGE FORMATTING
# =============================================================================


def format_crash_loop_alert(status: "CrashLoopStatus") -> str:
    """Crash-loop alert with the last five restarts."""
    lines = [
        "🚨 *CRASH LOOP DETECTED*",
        "",
        f"The bot has restarted *{status.restart_count} times* in the last "
        f"{status.time_window_minutes:g} minutes.",
        "",
        "⚠️ *Recent Restarts:*",
    ]
    for i, record in enumerate(status.recent_restarts[-5:], start=1):
        lines.append(
            f"{i}. {_clock_time(record.timestamp)} - {record.reason} ({record.heap_used_mb:.1f}MB)"
        )
    lines.append("")
    if status.should_emergency_stop:
        lines.append("🛑 *EMERGENCY STOP INITIATED*")
        lines.append("Bot will stop to prevent resource exhaustion.")
    else:
        lines.append("⚠️ *Action Required*")
        lines.append("Please investigate and fix the underlying issue.")
    return "\n".join(lines)


def format_restart_notice(
    count: int,
    max_per_day: int,
    reason: str,
    now: Optional[float] = None,
) -> str:
    """Restart notice with quota warnings at 80% and at the limit."""
    when = datetime.now() if now is None else datetime.fromtimestamp(now)
    message = (
        "🔄 Bot restart detected\n\n"
        f"📊 Count today: {count}/{max_per_day}\n"
        f"📝 Reason: {reason}\n"
        f"⏰ Time: {when.strftime('%Y-%m-%d %H:%M:%S')}"
    )
    if count >= max_per_day:
        message += (
            "\n\n⚠️ CRITICAL: Daily restart limit exceeded!\n"
            "🚨 Bot may be unstable - manual intervention needed"
        )
    elif count >= max_per_day * 0.8:
        message += "\n\n⚠️ WARNING: Approaching restart limit\n🔍 Monitor for issues"
    return message


def format_suspicious_activity(
    peer_id: str,
    chat_id: str,
    error_count: int,
    details: Optional[dict[str, Any]] = None,
) -> str:
    """Report of a group message from a peer with repeated session errors."""
    lines = [
        "⚠️ *Suspicious activity*",
        "",
        f"Peer: {peer_id}",
        f"Group: {chat_id}",
        f"Session errors in the last hour: {error_count}",
        "The message could not be decrypted and was deleted.",
    ]
    for key, value in (details or {}).items():
        lines.append(f"{key}: {value}")
    return "\n".join(lines)
