"""
Protocol client surface.

The messaging library is an external collaborator. These protocols define
the minimal surface the resilience layer needs from it (a real client
adapter, or a mock in tests). The client reports everything that happens on
the socket by calling the ``emit`` callback it receives in ``connect``; the
driver consumes those events one at a time.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable

from .classifier import CloseEvent


class ConnectionEventType(Enum):
    """Events a protocol client can report."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"
    CREDENTIALS_UPDATE = "credentials_update"
    MESSAGE = "message"
    SESSION_ERROR = "session_error"


@dataclass(frozen=True)
class InboundMessage:
    """An inbound chat message as seen by the resilience layer."""

    message_id: str
    chat_id: str
    sender_id: str
    timestamp: float | None = None  # epoch seconds
    text: str = ""
    from_me: bool = False

    @property
    def is_group(self) -> bool:
        return self.chat_id.endswith("@g.us")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InboundMessage":
        timestamp = data.get("timestamp")
        return cls(
            message_id=str(data.get("message_id", "")),
            chat_id=str(data.get("chat_id", "")),
            sender_id=str(data.get("sender_id") or data.get("chat_id", "")),
            timestamp=float(timestamp) if timestamp is not None else None,
            text=str(data.get("text") or ""),
            from_me=bool(data.get("from_me", False)),
        )


@dataclass(frozen=True)
class ConnectionEvent:
    """A single event reported by the protocol client."""

    type: ConnectionEventType
    close: CloseEvent | None = None
    message: InboundMessage | None = None
    peer_id: str | None = None
    credentials: dict[str, Any] | None = None
    error: str = ""

    @classmethod
    def connecting(cls) -> "ConnectionEvent":
        return cls(ConnectionEventType.CONNECTING)

    @classmethod
    def opened(cls) -> "ConnectionEvent":
        return cls(ConnectionEventType.OPEN)

    @classmethod
    def closed(
        cls,
        status_code: int | None = None,
        message: str = "",
        error_code: str | None = None,
    ) -> "ConnectionEvent":
        return cls(ConnectionEventType.CLOSE, close=CloseEvent(status_code, message, error_code))

    @classmethod
    def inbound(cls, message: InboundMessage) -> "ConnectionEvent":
        return cls(ConnectionEventType.MESSAGE, message=message)

    @classmethod
    def session_error(
        cls,
        peer_id: str,
        message: InboundMessage | None = None,
        error: str = "",
    ) -> "ConnectionEvent":
        return cls(ConnectionEventType.SESSION_ERROR, peer_id=peer_id, message=message, error=error)

    @classmethod
    def credentials_update(cls, credentials: dict[str, Any]) -> "ConnectionEvent":
        return cls(ConnectionEventType.CREDENTIALS_UPDATE, credentials=credentials)


EventSink = Callable[[ConnectionEvent], None]


@runtime_checkable
class ProtocolClient(Protocol):
    """Minimal messaging client interface expected by the driver."""

    async def connect(self, credentials: dict[str, Any] | None, emit: EventSink) -> None: ...
    async def disconnect(self) -> None: ...
    async def send_text(self, recipient: str, text: str) -> None: ...
    async def delete_message(self, chat_id: str, message_id: str, participant: str | None = None) -> None: ...
    async def reset_peer_session(self, peer_id: str) -> None: ...
