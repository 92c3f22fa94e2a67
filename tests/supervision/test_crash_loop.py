"""Tests for CrashLoopGuard."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from lifeline.core.exceptions import CrashLoopDetected, EmergencyStopActive, ExitCode, StoreError
from lifeline.supervision.crash_loop import CrashLoopGuard, CrashLoopGuardConfig, CrashLoopStatus
from lifeline.supervision.store import (
    CRASH_LOOP_LEDGER,
    EmergencyStopFlag,
    InMemoryStore,
    JsonFileStore,
    RestartRecord,
)


@pytest.fixture
def guard(memory_store, clock):
    return CrashLoopGuard(memory_store, clock=clock)


class FirstReadFailsStore(InMemoryStore):
    """Store whose first ledger read raises."""

    def __init__(self):
        super().__init__()
        self.reads = 0

    async def load_ledger(self, name):
        self.reads += 1
        if self.reads == 1:
            raise StoreError("transient read failure")
        return await super().load_ledger(name)


def seed(store, clock, offsets, reason="crash"):
    """Put restart records at ``clock.now - offset`` into the crash-loop ledger."""
    store.ledgers[CRASH_LOOP_LEDGER] = [RestartRecord(clock.now - o, reason) for o in offsets]


# ============================================================================
# Window Evaluation
# ============================================================================


class TestCheckForCrashLoop:
    """Tests for check_for_crash_loop."""

    async def test_below_alert_threshold(self, guard, memory_store, clock):
        seed(memory_store, clock, [10, 20, 30, 40])
        await guard.ledger.load()

        status = guard.check_for_crash_loop()

        assert status.restart_count == 4
        assert not status.is_crash_loop
        assert not status.should_alert
        assert not status.should_emergency_stop

    async def test_five_restarts_in_four_minutes_alerts(self, guard, memory_store, clock):
        seed(memory_store, clock, [240, 180, 120, 60, 0])
        await guard.ledger.load()

        status = guard.check_for_crash_loop()

        assert status.restart_count == 5
        assert status.should_alert is True
        assert status.should_emergency_stop is False
        assert status.time_window_minutes == 5

    async def test_twenty_restarts_is_emergency(self, guard, memory_store, clock):
        seed(memory_store, clock, range(20))
        await guard.ledger.load()

        assert guard.check_for_crash_loop().should_emergency_stop is True

    async def test_restarts_outside_window_ignored(self, guard, memory_store, clock):
        seed(memory_store, clock, [301, 400, 500, 600, 700, 0])
        await guard.ledger.load()

        status = guard.check_for_crash_loop()

        assert status.restart_count == 1
        assert not status.should_alert


# ============================================================================
# Startup Sequence
# ============================================================================


class TestOnStartup:
    """Tests for on_startup."""

    async def test_first_start_is_quiet(self, guard, memory_store):
        status = await guard.on_startup("process start")

        assert status.restart_count == 0
        assert not guard.has_pending_alert
        assert len(memory_store.ledgers[CRASH_LOOP_LEDGER]) == 1

    async def test_alert_is_queued(self, guard, memory_store, clock):
        seed(memory_store, clock, [200, 150, 100, 50, 10])

        status = await guard.on_startup("process start")

        assert status.should_alert
        assert guard.has_pending_alert
        assert memory_store.flag is None

    async def test_emergency_stop_writes_flag(self, guard, memory_store, clock):
        seed(memory_store, clock, range(1, 21))

        with pytest.raises(CrashLoopDetected) as exc_info:
            await guard.on_startup("process start")

        assert exc_info.value.exit_code == ExitCode.EMERGENCY_STOP
        assert memory_store.flag is not None
        assert memory_store.flag.timestamp == clock.now
        assert len(memory_store.flag.restart_history) == 21
        # this start is recorded before the process stops
        assert len(memory_store.ledgers[CRASH_LOOP_LEDGER]) == 21

    async def test_rapid_restarts_stop_at_twenty_first_start(self, memory_store, clock):
        """21 starts one second apart: the 21st writes the flag, the 22nd is refused."""
        for start in range(1, 21):
            guard = CrashLoopGuard(memory_store, clock=clock)
            await guard.on_startup(f"start {start}")
            clock.advance(1)

        twenty_first = CrashLoopGuard(memory_store, clock=clock)
        with pytest.raises(CrashLoopDetected):
            await twenty_first.on_startup("start 21")
        assert memory_store.flag is not None

        clock.advance(1)
        twenty_second = CrashLoopGuard(memory_store, clock=clock)
        with pytest.raises(EmergencyStopActive) as exc_info:
            await twenty_second.on_startup("start 22")

        assert exc_info.value.exit_code == ExitCode.EMERGENCY_STOP
        # the refused start is never recorded
        assert len(memory_store.ledgers[CRASH_LOOP_LEDGER]) == 21

    async def test_fresh_flag_refuses_startup(self, guard, memory_store, clock):
        memory_store.flag = EmergencyStopFlag(clock.now - 120, "manual")

        with pytest.raises(EmergencyStopActive) as exc_info:
            await guard.on_startup()

        assert exc_info.value.reason == "manual"
        assert exc_info.value.flag_age_seconds == 120
        assert CRASH_LOOP_LEDGER not in memory_store.ledgers

    async def test_stale_flag_is_removed(self, guard, memory_store, clock):
        memory_store.flag = EmergencyStopFlag(clock.now - 601, "old")

        await guard.on_startup()

        assert memory_store.flag is None
        assert len(memory_store.ledgers[CRASH_LOOP_LEDGER]) == 1

    async def test_check_emergency_stop_flag_returns_stale_flag(self, guard, memory_store, clock):
        memory_store.flag = EmergencyStopFlag(clock.now - 900, "old")

        removed = await guard.check_emergency_stop_flag()

        assert removed.reason == "old"

    async def test_custom_thresholds(self, memory_store, clock):
        config = CrashLoopGuardConfig(window_seconds=60, alert_threshold=2, emergency_threshold=3)
        guard = CrashLoopGuard(memory_store, config, clock=clock)
        seed(memory_store, clock, [30, 20, 10])

        with pytest.raises(CrashLoopDetected):
            await guard.on_startup()

    async def test_durable_across_instances(self, tmp_path, clock):
        store = JsonFileStore(tmp_path)
        for _ in range(5):
            await CrashLoopGuard(store, clock=clock).on_startup()
            clock.advance(10)

        guard = CrashLoopGuard(store, clock=clock)
        status = await guard.on_startup()

        assert status.restart_count == 5
        assert guard.has_pending_alert

    async def test_failed_read_keeps_durable_history(self, clock):
        store = FirstReadFailsStore()
        seed(store, clock, range(1, 20))

        await CrashLoopGuard(store, clock=clock).on_startup("boot")

        records = store.ledgers[CRASH_LOOP_LEDGER]
        assert len(records) == 20
        assert records[-1].reason == "boot"


# ============================================================================
# Alerts and Maintenance
# ============================================================================


class TestAlerts:
    """Tests for alert formatting and delivery."""

    def test_format_alert_lists_last_five(self, guard, clock):
        status = CrashLoopStatus(
            is_crash_loop=True,
            should_alert=True,
            restart_count=7,
            recent_restarts=[RestartRecord(clock.now - i, f"reason-{i}", 1, 80.0) for i in range(7, 0, -1)],
        )

        text = guard.format_alert(status)

        assert "CRASH LOOP DETECTED" in text
        assert "*7 times*" in text
        assert "reason-7" not in text
        assert "reason-5" in text
        assert "reason-1" in text
        assert "Action Required" in text

    def test_format_alert_emergency(self, guard):
        status = CrashLoopStatus(True, True, True, 20)

        assert "EMERGENCY STOP INITIATED" in guard.format_alert(status)

    async def test_send_pending_alert_once(self, guard, memory_store, clock):
        seed(memory_store, clock, [50, 40, 30, 20, 10])
        await guard.on_startup()
        channel = AsyncMock()

        assert await guard.send_pending_alert(channel, "operator@s.whatsapp.net") is True
        assert await guard.send_pending_alert(channel, "operator@s.whatsapp.net") is False

        channel.send.assert_awaited_once()
        recipient, text = channel.send.await_args.args
        assert recipient == "operator@s.whatsapp.net"
        assert "CRASH LOOP DETECTED" in text

    async def test_send_failure_is_swallowed(self, guard, memory_store, clock):
        seed(memory_store, clock, [50, 40, 30, 20, 10])
        await guard.on_startup()
        channel = AsyncMock()
        channel.send.side_effect = RuntimeError("offline")

        assert await guard.send_pending_alert(channel, "operator") is False


class TestMaintenance:
    """Tests for get_stats and reset."""

    async def test_get_stats(self, guard, memory_store, clock):
        seed(memory_store, clock, [1000, 200, 100])
        await guard.on_startup()

        stats = guard.get_stats()

        assert stats["total_restarts"] == 4
        assert stats["restarts_in_window"] == 3
        assert stats["time_window_minutes"] == 5
        assert stats["is_crash_loop"] is False
        assert len(stats["recent_restarts"]) == 3

    async def test_reset(self, guard, memory_store, clock):
        seed(memory_store, clock, [50, 40, 30, 20, 10])
        memory_store.flag = EmergencyStopFlag(clock.now - 700, "old")
        await guard.on_startup()

        await guard.reset()

        assert len(guard.ledger) == 0
        assert memory_store.ledgers[CRASH_LOOP_LEDGER] == []
        assert memory_store.flag is None
        assert not guard.has_pending_alert
