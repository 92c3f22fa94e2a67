"""Tests for the startup window and the stale message filter."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

from lifeline.sessions.startup import StartupConfig, StartupMessageFilter, StartupWindow


class TestStartupWindow:
    """Tests for StartupWindow."""

    def test_inactive_before_start(self, clock):
        window = StartupWindow(15, clock=clock)

        assert not window.started
        assert not window.is_active()
        assert window.remaining() == 0.0

    def test_active_for_duration(self, clock):
        window = StartupWindow(15, clock=clock)

        assert window.start() is True
        clock.advance(14)

        assert window.is_active()
        assert window.remaining() == 1.0

    def test_start_only_once(self, clock):
        window = StartupWindow(15, clock=clock)
        window.start()
        clock.advance(10)

        assert window.start() is False
        clock.advance(6)
        assert not window.is_active()

    def test_expiry_closes_once(self, clock):
        on_close = MagicMock()
        window = StartupWindow(15, on_close=on_close, clock=clock)
        window.start()
        clock.advance(15)

        assert not window.is_active()
        assert not window.is_active()
        assert window.closed
        on_close.assert_called_once_with()

    def test_close_is_one_way(self, clock):
        on_close = MagicMock()
        window = StartupWindow(15, on_close=on_close, clock=clock)
        window.start()

        assert window.close() is True
        assert window.close() is False
        assert not window.is_active()
        on_close.assert_called_once_with()


class TestStartupMessageFilter:
    """Tests for StartupMessageFilter."""

    def test_cutoff(self):
        message_filter = StartupMessageFilter(boot_time_ms=1_000_000, grace_period_ms=60_000)

        assert message_filter.cutoff_ms == 940_000

    def test_old_message_ignored(self):
        message_filter = StartupMessageFilter(boot_time_ms=1_000_000, grace_period_ms=60_000)

        assert message_filter.should_ignore_old_message(939.999) is True

    def test_boundary_not_ignored(self):
        message_filter = StartupMessageFilter(boot_time_ms=1_000_000, grace_period_ms=60_000)

        assert message_filter.should_ignore_old_message(940) is False

    def test_recent_message_kept(self):
        message_filter = StartupMessageFilter(boot_time_ms=1_000_000, grace_period_ms=60_000)

        assert message_filter.should_ignore_old_message(990) is False

    def test_missing_timestamp_kept(self):
        assert StartupMessageFilter(boot_time_ms=1_000_000).should_ignore_old_message(None) is False

    def test_from_config(self, clock):
        message_filter = StartupMessageFilter.from_config(
            StartupConfig(grace_period_seconds=30, log_every=5), boot_time=clock.now
        )

        assert message_filter.boot_time_ms == clock.now * 1000
        assert message_filter.cutoff_ms == (clock.now - 30) * 1000
        assert message_filter.log_every == 5

    def test_check_counts_and_logs_every_tenth(self, caplog):
        message_filter = StartupMessageFilter(boot_time_ms=1_000_000, grace_period_ms=0)

        with caplog.at_level(logging.INFO, logger="lifeline.sessions.startup"):
            for _ in range(25):
                assert message_filter.check(1) is True
            assert message_filter.check(2000) is False

        assert message_filter.discarded == 25
        ignored = [r for r in caplog.records if "Ignored" in r.getMessage()]
        assert [r.getMessage() for r in ignored] == [
            "Ignored 10 messages from before startup",
            "Ignored 20 messages from before startup",
        ]
