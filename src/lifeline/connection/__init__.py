"""Connection lifecycle: close classification, backoff, state machine and driver."""

from .backoff import BackoffConfig, BackoffPolicy
from .classifier import CloseEvent, ErrorCategory, classify_close, error_for_category
from .credentials import FileCredentialStore
from .driver import ResilientConnection
from .protocol import (
    ConnectionEvent,
    ConnectionEventType,
    EventSink,
    InboundMessage,
    ProtocolClient,
)
from .state_machine import (
    Action,
    ActionKind,
    ConnectionAttempt,
    ConnectionPhase,
    ConnectionStateMachine,
    ConnectionStateMachineConfig,
    ExitCode,
)

__all__ = [
    "Action",
    "ActionKind",
    "BackoffConfig",
    "BackoffPolicy",
    "CloseEvent",
    "ConnectionAttempt",
    "ConnectionEvent",
    "ConnectionEventType",
    "ConnectionPhase",
    "ConnectionStateMachine",
    "ConnectionStateMachineConfig",
    "ErrorCategory",
    "EventSink",
    "ExitCode",
    "FileCredentialStore",
    "InboundMessage",
    "ProtocolClient",
    "ResilientConnection",
    "classify_close",
    "error_for_category",
]
