"""
Startup handling: the startup window and the stale-message filter.

Right after connecting, the server replays messages that arrived while the
process was down. Messages older than the boot time minus a grace period
are dropped, and for a short window after the first open the tracker is
more aggressive about skipping peers with broken sessions.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class StartupConfig:
    """Configuration for the startup window and message filter."""

    window_seconds: float = 15.0
    grace_period_seconds: float = 60.0
    log_every: int = 10


class StartupWindow:
    """
    Fixed-length window started on the first open.

    Closing is one-way and fires ``on_close`` exactly once, whether the
    window is closed by its timer or noticed as expired on a read.
    """

    def __init__(
        self,
        duration: float = 15.0,
        on_close: Optional[Callable[[], Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.duration = duration
        self.on_close = on_close
        self._clock = clock
        self.started_at: Optional[float] = None
        self._closed = False

    @property
    def started(self) -> bool:
        return self.started_at is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self, now: Optional[float] = None) -> bool:
        """Start the window. Returns False if it had already been started."""
        if self.started:
            return False
        self.started_at = self._clock() if now is None else now
        logger.info(f"Startup window open for {self.duration:g}s")
        return True

    def remaining(self, now: Optional[float] = None) -> float:
        if not self.started or self._closed:
            return 0.0
        now = self._clock() if now is None else now
        return max(0.0, self.started_at + self.duration - now)

    def is_active(self, now: Optional[float] = None) -> bool:
        if not self.started or self._closed:
            return False
        if self.remaining(now) > 0:
            return True
        self.close()
        return False

    def close(self) -> bool:
        """Close the window. Returns False if it was already closed."""
        if self._closed:
            return False
        self._closed = True
        logger.info("Startup window closed")
        if self.on_close is not None:
            self.on_close()
        return True


class StartupMessageFilter:
    """Drops messages sent before the process booted (minus a grace period)."""

    def __init__(
        self,
        boot_time_ms: Optional[float] = None,
        grace_period_ms: float = 60_000,
        log_every: int = 10,
    ):
        self.boot_time_ms = time.time() * 1000 if boot_time_ms is None else boot_time_ms
        self.grace_period_ms = grace_period_ms
        self.log_every = max(1, log_every)
        self.discarded = 0

    @classmethod
    def from_config(cls, config: StartupConfig, boot_time: Optional[float] = None) -> "StartupMessageFilter":
        return cls(
            boot_time_ms=None if boot_time is None else boot_time * 1000,
            grace_period_ms=config.grace_period_seconds * 1000,
            log_every=config.log_every,
        )

    @property
    def cutoff_ms(self) -> float:
        return self.boot_time_ms - self.grace_period_ms

    def should_ignore_old_message(self, timestamp: Optional[float]) -> bool:
        """
        Whether a message is older than the cutoff.

        Args:
            timestamp: Message time in epoch seconds (None is never ignored)
        """
        if timestamp is None:
            return False
        return timestamp * 1000 < self.cutoff_ms

    def check(self, timestamp: Optional[float]) -> bool:
        """Like should_ignore_old_message, but counts and logs discards."""
        if not self.should_ignore_old_message(timestamp):
            return False
        self.discarded += 1
        if self.discarded % self.log_every == 0:
            logger.info(f"Ignored {self.discarded} messages from before startup")
        return True
