"""Process-level restart supervision: crash-loop guard, daily quota, instance lock."""

from .crash_loop import CrashLoopGuard, CrashLoopGuardConfig, CrashLoopStatus
from .instance_lock import InstanceLock
from .ledger import RestartLedger, bounded_store_call
from .restart_limiter import RestartLimiter, RestartLimiterConfig
from .store import (
    CRASH_LOOP_LEDGER,
    DAILY_LEDGER,
    DurableStore,
    EmergencyStopFlag,
    InMemoryStore,
    JsonFileStore,
    RestartRecord,
)

__all__ = [
    "CRASH_LOOP_LEDGER",
    "DAILY_LEDGER",
    "CrashLoopGuard",
    "CrashLoopGuardConfig",
    "CrashLoopStatus",
    "DurableStore",
    "EmergencyStopFlag",
    "InMemoryStore",
    "InstanceLock",
    "JsonFileStore",
    "RestartLedger",
    "RestartLimiter",
    "RestartLimiterConfig",
    "RestartRecord",
    "bounded_store_call",
]
