"""Core infrastructure shared by every Lifeline component."""

from .config import CoreSettings, clear_config_cache, get_config
from .exceptions import (
    AuthenticationExpired,
    ConnectionFailure,
    CrashLoopDetected,
    EmergencyStopActive,
    ExitCode,
    InstanceLockedError,
    LifelineException,
    PeerSessionError,
    StoreError,
    SupervisionFailure,
    TransientProtocolError,
    UnclassifiedError,
)
from .logging import bind_connection, configure_logging, connection_scope, new_connection_id

__all__ = [
    "AuthenticationExpired",
    "ConnectionFailure",
    "CoreSettings",
    "CrashLoopDetected",
    "EmergencyStopActive",
    "ExitCode",
    "InstanceLockedError",
    "LifelineException",
    "PeerSessionError",
    "StoreError",
    "SupervisionFailure",
    "TransientProtocolError",
    "UnclassifiedError",
    "bind_connection",
    "clear_config_cache",
    "configure_logging",
    "connection_scope",
    "get_config",
    "new_connection_id",
]
