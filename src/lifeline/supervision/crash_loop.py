"""
Crash Loop Guard - detects restart storms and stops them.

Every process start is recorded in the crash-loop ledger (retention one
hour). The number of starts inside the evaluation window decides the
outcome:

- below the alert threshold: nothing happens
- at or above the alert threshold: an operator alert is queued and sent
  once the connection is open
- at or above the emergency threshold: the emergency stop flag is written
  and the process exits with status 42

A fresh emergency stop flag refuses startup before anything else runs, so
the external supervisor cannot keep the loop going.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, NoReturn, Optional

from ..alerts import OperatorChannel, deliver, format_crash_loop_alert
from ..core.exceptions import CrashLoopDetected, EmergencyStopActive
from .ledger import RestartLedger, bounded_store_call
from .store import CRASH_LOOP_LEDGER, DurableStore, EmergencyStopFlag, RestartRecord

logger = logging.getLogger(__name__)


@dataclass
class CrashLoopGuardConfig:
    """Configuration for CrashLoopGuard."""

    window_seconds: float = 300.0
    alert_threshold: int = 5
    emergency_threshold: int = 20
    history_retention_seconds: float = 3600.0
    flag_max_age_seconds: float = 600.0
    store_timeout: float = 5.0


@dataclass
class CrashLoopStatus:
    """Result of evaluating the crash-loop window."""

    is_crash_loop: bool = False
    should_alert: bool = False
    should_emergency_stop: bool = False
    restart_count: int = 0
    time_window_minutes: float = 5.0
    recent_restarts: list[RestartRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_crash_loop": self.is_crash_loop,
            "should_alert": self.should_alert,
            "should_emergency_stop": self.should_emergency_stop,
            "restart_count": self.restart_count,
            "time_window_minutes": self.time_window_minutes,
            "recent_restarts": [r.to_dict() for r in self.recent_restarts],
        }


class CrashLoopGuard:
    """
    Restart-storm detector with an emergency stop.

    Example:
        guard = CrashLoopGuard(JsonFileStore(state_dir))
        status = await guard.on_startup("process start")  # may raise
        ...
        # once the connection is open
        await guard.send_pending_alert(channel, operator)
    """

    def __init__(
        self,
        store: DurableStore,
        config: Optional[CrashLoopGuardConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or CrashLoopGuardConfig()
        self._clock = clock
        self.ledger = RestartLedger(
            store,
            CRASH_LOOP_LEDGER,
            retention_seconds=self.config.history_retention_seconds,
            store_timeout=self.config.store_timeout,
            clock=clock,
        )
        self._pending_alert: Optional[CrashLoopStatus] = None

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    # -------------------------------------------------------------------------
    # EMERGENCY FLAG
    # -------------------------------------------------------------------------

    async def check_emergency_stop_flag(self, now: Optional[float] = None) -> Optional[EmergencyStopFlag]:
        """
        Refuse startup while a fresh emergency stop flag exists.

        A stale flag is deleted.

        Returns:
            The stale flag that was removed, or None

        Raises:
            EmergencyStopActive: If the flag is younger than the maximum age
        """
        now = self._now(now)
        flag = await bounded_store_call(
            self.store.load_flag(),
            self.config.store_timeout,
            "read the emergency stop flag",
        )
        if flag is None:
            return None

        age = flag.age(now)
        if flag.is_fresh(self.config.flag_max_age_seconds, now):
            logger.error(
                f"Emergency stop flag detected ({age:.0f}s old, reason: {flag.reason}). "
                f"Startup refused; remove the flag to allow startup."
            )
            raise EmergencyStopActive(flag.reason, age)

        logger.info(f"Removing stale emergency stop flag ({age:.0f}s old)")
        await bounded_store_call(
            self.store.delete_flag(),
            self.config.store_timeout,
            "delete the stale emergency stop flag",
        )
        return flag

    async def emergency_stop(self, reason: str, now: Optional[float] = None) -> NoReturn:
        """
        Write the emergency stop flag and stop.

        Raises:
            CrashLoopDetected: Always
        """
        now = self._now(now)
        restart_count = self.ledger.count_in_window(self.config.window_seconds, now)
        logger.critical(
            f"EMERGENCY STOP - {reason} "
            f"({restart_count} restarts in {self.config.window_seconds / 60:g} minutes)",
            extra={"fields": {"reason": reason, "restart_count": restart_count}},
        )
        flag = EmergencyStopFlag(timestamp=now, reason=reason, restart_history=self.ledger.records)
        await bounded_store_call(
            self.store.save_flag(flag),
            self.config.store_timeout,
            "write the emergency stop flag",
        )
        raise CrashLoopDetected(reason, restart_count)

    # -------------------------------------------------------------------------
    # RESTART HISTORY
    # -------------------------------------------------------------------------

    async def record_restart(self, reason: str = "unknown", now: Optional[float] = None) -> RestartRecord:
        """Append a restart to the crash-loop ledger."""
        return await self.ledger.record_restart(reason, self._now(now))

    def check_for_crash_loop(self, now: Optional[float] = None) -> CrashLoopStatus:
        """Evaluate the restarts inside the window."""
        recent = self.ledger.in_window(self.config.window_seconds, self._now(now))
        count = len(recent)
        is_crash_loop = count >= self.config.alert_threshold
        return CrashLoopStatus(
            is_crash_loop=is_crash_loop,
            should_alert=is_crash_loop,
            should_emergency_stop=count >= self.config.emergency_threshold,
            restart_count=count,
            time_window_minutes=self.config.window_seconds / 60,
            recent_restarts=recent,
        )

    async def on_startup(self, reason: str = "process start", now: Optional[float] = None) -> CrashLoopStatus:
        """
        Run the startup sequence.

        The flag is checked first, then the window is evaluated over the
        starts that came before this one, then this start is recorded.
        The current start is not counted in its own evaluation, so the
        alert fires on the start after the alert_threshold-th one in the
        window (the 6th with the default threshold of 5), and the emergency
        stop on the start after the emergency_threshold-th.

        Raises:
            EmergencyStopActive: A fresh flag refuses startup
            CrashLoopDetected: The window reached the emergency threshold
        """
        now = self._now(now)
        await self.check_emergency_stop_flag(now)
        if not self.ledger.loaded:
            await self.ledger.load()

        status = self.check_for_crash_loop(now)
        await self.record_restart(reason, now)
        if status.should_emergency_stop:
            await self.emergency_stop(
                f"{status.restart_count} restarts in {status.time_window_minutes:g} minutes",
                now,
            )
        if status.should_alert:
            logger.warning(
                f"Crash loop detected: {status.restart_count} restarts in "
                f"{status.time_window_minutes:g} minutes; alert queued"
            )
            self._pending_alert = status
        return status

    # -------------------------------------------------------------------------
    # ALERTS
    # -------------------------------------------------------------------------

    @property
    def has_pending_alert(self) -> bool:
        return self._pending_alert is not None

    def take_pending_alert(self) -> Optional[CrashLoopStatus]:
        """Return the queued alert and clear it."""
        status, self._pending_alert = self._pending_alert, None
        return status

    def format_alert(self, status: CrashLoopStatus) -> str:
        return format_crash_loop_alert(status)

    async def send_pending_alert(self, channel: Optional[OperatorChannel], recipient: Optional[str]) -> bool:
        """Deliver the queued alert, if any. Returns True if one was sent."""
        status = self.take_pending_alert()
        if status is None:
            return False
        return await deliver(channel, recipient, self.format_alert(status))

    # -------------------------------------------------------------------------
    # MAINTENANCE
    # -------------------------------------------------------------------------

    def get_stats(self, now: Optional[float] = None) -> dict[str, Any]:
        """Get crash-loop statistics."""
        recent = self.ledger.in_window(self.config.window_seconds, self._now(now))
        return {
            "total_restarts": len(self.ledger),
            "restarts_in_window": len(recent),
            "time_window_minutes": self.config.window_seconds / 60,
            "is_crash_loop": len(recent) >= self.config.alert_threshold,
            "recent_restarts": [r.to_dict() for r in recent[-10:]],
        }

    async def reset(self) -> None:
        """Clear the restart history and any emergency stop flag."""
        await self.ledger.clear()
        await bounded_store_call(
            self.store.delete_flag(),
            self.config.store_timeout,
            "delete the emergency stop flag",
        )
        self._pending_alert = None
        logger.info("Crash loop history reset")
