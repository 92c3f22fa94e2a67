"""Tests for operator alert channels and message formatting."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from lifeline.alerts import (
    AlertDeliveryError,
    OperatorChannel,
    ProtocolOperatorChannel,
    WebhookOperatorChannel,
    deliver,
    format_crash_loop_alert,
    format_restart_notice,
    format_suspicious_activity,
)
from lifeline.supervision.crash_loop import CrashLoopStatus
from lifeline.supervision.store import RestartRecord


def mock_webhook_session(status: int = 200):
    """Mock aiohttp.ClientSession class whose POSTs answer with ``status``."""
    mock_response = MagicMock()
    mock_response.status = status

    mock_session = MagicMock()
    mock_session.post.return_value.__aenter__ = AsyncMock(return_value=mock_response)
    mock_session.post.return_value.__aexit__ = AsyncMock(return_value=False)

    mock_session_class = MagicMock()
    mock_session_class.return_value.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session_class.return_value.__aexit__ = AsyncMock(return_value=False)
    return mock_session_class, mock_session


# ============================================================================
# Channels
# ============================================================================


class TestProtocolOperatorChannel:
    """Tests for sending alerts over the bot connection."""

    async def test_send_uses_client(self):
        client = AsyncMock()
        channel = ProtocolOperatorChannel(client)

        await channel.send("operator@s.whatsapp.net", "hello")

        client.send_text.assert_awaited_once_with("operator@s.whatsapp.net", "hello")

    def test_is_operator_channel(self):
        assert isinstance(ProtocolOperatorChannel(AsyncMock()), OperatorChannel)
        assert isinstance(WebhookOperatorChannel("http://localhost/hook"), OperatorChannel)


class TestWebhookOperatorChannel:
    """Tests for the webhook channel."""

    async def test_posts_json(self):
        session_class, session = mock_webhook_session(204)

        with patch("aiohttp.ClientSession", session_class):
            await WebhookOperatorChannel("https://alerts.example.com/hook", timeout=3).send("ops", "text")

        session.post.assert_called_once_with(
            "https://alerts.example.com/hook", json={"recipient": "ops", "text": "text"}
        )
        timeout = session_class.call_args.kwargs["timeout"]
        assert timeout.total == 3

    async def test_error_status_raises(self):
        session_class, _ = mock_webhook_session(500)

        with patch("aiohttp.ClientSession", session_class):
            with pytest.raises(AlertDeliveryError) as exc_info:
                await WebhookOperatorChannel("https://alerts.example.com/hook").send("ops", "text")

        assert exc_info.value.details["status"] == 500

    async def test_client_error_raises(self):
        session_class, session = mock_webhook_session()
        session.post.side_effect = aiohttp.ClientConnectionError("refused")

        with patch("aiohttp.ClientSession", session_class):
            with pytest.raises(AlertDeliveryError, match="refused"):
                await WebhookOperatorChannel("https://alerts.example.com/hook").send("ops", "text")


class TestDeliver:
    """Tests for deliver."""

    async def test_delivers(self):
        channel = AsyncMock()

        assert await deliver(channel, "ops", "text") is True
        channel.send.assert_awaited_once_with("ops", "text")

    async def test_no_channel_or_recipient(self):
        channel = AsyncMock()

        assert await deliver(None, "ops", "text") is False
        assert await deliver(channel, None, "text") is False
        assert await deliver(channel, "", "text") is False
        channel.send.assert_not_awaited()

    async def test_failure_swallowed(self, caplog):
        channel = AsyncMock()
        channel.send.side_effect = AlertDeliveryError("Webhook returned HTTP 502")

        assert await deliver(channel, "ops", "text") is False
        assert "Failed to send operator alert" in caplog.text


# ============================================================================
# Formatting
# ============================================================================


class TestFormatting:
    """Tests for the operator message formats."""

    def test_crash_loop_alert(self):
        status = CrashLoopStatus(
            is_crash_loop=True,
            should_alert=True,
            restart_count=6,
            recent_restarts=[RestartRecord(1_700_000_000 + i, f"crash {i}", 1, 80.0) for i in range(6)],
        )

        text = format_crash_loop_alert(status)

        assert text.startswith("🚨 *CRASH LOOP DETECTED*")
        assert "*6 times* in the last 5 minutes" in text
        assert "crash 0" not in text
        assert "1. " in text and "5. " in text and "6. " not in text
        assert "(80.0MB)" in text
        assert "Action Required" in text

    def test_restart_notice_below_warning(self):
        text = format_restart_notice(7, 10, "deploy", now=1_700_000_000)

        assert "Count today: 7/10" in text
        assert "Reason: deploy" in text
        assert "WARNING" not in text

    def test_restart_notice_warning(self):
        assert "WARNING: Approaching restart limit" in format_restart_notice(8, 10, "crash")

    def test_restart_notice_critical(self):
        text = format_restart_notice(12, 10, "crash")

        assert "CRITICAL: Daily restart limit exceeded!" in text
        assert "WARNING" not in text

    def test_suspicious_activity(self):
        text = format_suspicious_activity("peer@lid", "group@g.us", 3, {"message_id": "ABC"})

        assert "Peer: peer@lid" in text
        assert "Group: group@g.us" in text
        assert "Session errors in the last hour: 3" in text
        assert "message_id: ABC" in text
