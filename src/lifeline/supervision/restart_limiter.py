"""
Restart Limiter - daily restart quota.

Counts restarts over a rolling 24 hours. The operator gets a notice on
every successful connect, with a warning as the quota fills up. Past the
quota plus a safety margin the process should stop.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..alerts import OperatorChannel, deliver, format_restart_notice
from .ledger import RestartLedger
from .store import DAILY_LEDGER, DurableStore

logger = logging.getLogger(__name__)


@dataclass
class RestartLimiterConfig:
    """Configuration for RestartLimiter."""

    max_restarts_per_day: int = 10
    emergency_margin: int = 5
    retention_seconds: float = 24 * 3600.0
    store_timeout: float = 5.0


class RestartLimiter:
    """Daily restart quota backed by the "daily" ledger."""

    def __init__(
        self,
        store: DurableStore,
        config: Optional[RestartLimiterConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RestartLimiterConfig()
        self._clock = clock
        self.ledger = RestartLedger(
            store,
            DAILY_LEDGER,
            retention_seconds=self.config.retention_seconds,
            store_timeout=self.config.store_timeout,
            clock=clock,
        )

    async def load(self) -> None:
        await self.ledger.load()

    async def record_restart(self, reason: str = "unknown", now: Optional[float] = None) -> int:
        """
        Record a restart.

        Returns:
            Number of restarts in the last 24 hours, this one included
        """
        now = self._clock() if now is None else now
        await self.ledger.record_restart(reason, now)
        count = self.today_count(now)
        logger.info(f"Restart recorded: {reason} ({count}/{self.config.max_restarts_per_day} today)")
        return count

    def today_count(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        horizon = now - self.config.retention_seconds
        return sum(1 for r in self.ledger.records if r.timestamp > horizon)

    def is_restart_limit_exceeded(self, now: Optional[float] = None) -> bool:
        return self.today_count(now) >= self.config.max_restarts_per_day

    def should_emergency_stop(self, now: Optional[float] = None) -> bool:
        return self.today_count(now) > self.config.max_restarts_per_day + self.config.emergency_margin

    async def notify_operator(
        self,
        channel: Optional[OperatorChannel],
        recipient: Optional[str],
        count: Optional[int] = None,
        reason: str = "unknown",
    ) -> bool:
        """Send the restart notice. Failures are logged, never raised."""
        count = self.today_count() if count is None else count
        text = format_restart_notice(count, self.config.max_restarts_per_day, reason, self._clock())
        sent = await deliver(channel, recipient, text)
        if sent:
            logger.info(f"Operator notified of restart ({count}/{self.config.max_restarts_per_day})")
        return sent

    def get_stats(self, now: Optional[float] = None) -> dict[str, Any]:
        """Get daily restart statistics."""
        now = self._clock() if now is None else now
        self.ledger.prune(now)
        return {
            "today_count": self.today_count(now),
            "max_allowed": self.config.max_restarts_per_day,
            "limit_exceeded": self.is_restart_limit_exceeded(now),
            "recent_restarts": [
                {
                    "reason": r.reason,
                    "timestamp": r.timestamp,
                    "minutes_ago": int((now - r.timestamp) // 60),
                }
                for r in self.ledger.records[-5:]
            ],
        }
