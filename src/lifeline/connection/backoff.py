"""
Reconnect delay policy.

Each close category has its own delay curve:

- STREAM_RESET: linear in the number of resets since the last credential
  wipe, capped at 3 minutes
- SESSION_CONFLICT: fixed 15 seconds
- OTHER: exponential from 5 seconds, capped at 1 minute
- LOGGED_OUT: no delay, the connection is not retried
"""

from __future__ import annotations

from dataclasses import dataclass

from .classifier import ErrorCategory


@dataclass
class BackoffConfig:
    """Configuration for BackoffPolicy (all values in milliseconds)."""

    stream_reset_step_ms: int = 30_000
    stream_reset_max_ms: int = 180_000
    conflict_delay_ms: int = 15_000
    base_delay_ms: int = 5_000
    max_delay_ms: int = 60_000


class BackoffPolicy:
    """Computes reconnect delays per error category."""

    def __init__(self, config: BackoffConfig | None = None):
        self.config = config or BackoffConfig()

    def delay_ms(
        self,
        category: ErrorCategory,
        attempt: int,
        reset_count: int = 1,
    ) -> int | None:
        """
        Delay before the next connection attempt.

        Args:
            category: Classified close category
            attempt: Reconnect attempt number (1-based)
            reset_count: Stream resets since the last credential wipe

        Returns:
            Delay in milliseconds, or None for LOGGED_OUT
        """
        attempt = max(1, attempt)
        reset_count = max(1, reset_count)

        if category is ErrorCategory.LOGGED_OUT:
            return None
        if category is ErrorCategory.STREAM_RESET:
            return min(self.config.stream_reset_step_ms * reset_count, self.config.stream_reset_max_ms)
        if category is ErrorCategory.SESSION_CONFLICT:
            return self.config.conflict_delay_ms

        # Delay saturates long before 2**32
        exponent = min(attempt - 1, 32)
        return min(self.config.base_delay_ms * (2 ** exponent), self.config.max_delay_ms)
