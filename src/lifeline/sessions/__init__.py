"""Per-peer session error containment and startup message handling."""

from .gate import InboundMessageGate, SessionErrorOutcome, SessionErrorResult
from .startup import StartupConfig, StartupMessageFilter, StartupWindow
from .tracker import SessionErrorTracker, SessionTrackerConfig, is_privacy_identifier

__all__ = [
    "InboundMessageGate",
    "SessionErrorOutcome",
    "SessionErrorResult",
    "SessionErrorTracker",
    "SessionTrackerConfig",
    "StartupConfig",
    "StartupMessageFilter",
    "StartupWindow",
    "is_privacy_identifier",
]
