"""Contract between the gateway and the device transport.

The transport owns the wire protocol, encryption and device sync. The
gateway only needs to open a handle per session, send text and presence
updates through it, and receive connection, message and credential events.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Optional, Protocol


class DisconnectReason(IntEnum):
    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


class TransportError(Exception):
    """Raised by a transport handle when an operation fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class AuthState:
    session_id: str
    directory: Path
    creds: dict[str, Any] = field(default_factory=dict)

    @property
    def is_registered(self) -> bool:
        return bool(self.creds.get("registered") or self.creds.get("me"))


@dataclass
class ConnectionUpdate:
    connection: Optional[str] = None  # "connecting" | "open" | "close"
    status_code: Optional[int] = None
    pairing_code: Optional[str] = None
    error: Optional[str] = None


@dataclass
class InboundMessage:
    message_id: str
    remote_jid: str
    from_me: bool = False
    timestamp: int = 0
    message_type: str = "unknown"
    text: str = ""
    media: Optional[dict[str, Any]] = None


@dataclass
class SendReceipt:
    message_id: Optional[str]
    raw: dict[str, Any] = field(default_factory=dict)


class TransportEvents(Protocol):
    async def on_connection_update(self, handle: "TransportHandle", update: ConnectionUpdate) -> None: ...

    async def on_messages(self, handle: "TransportHandle", messages: list[InboundMessage]) -> None: ...

    async def on_credentials_update(self, handle: "TransportHandle", creds: dict[str, Any]) -> None: ...


class TransportHandle(Protocol):
    async def send_message(self, jid: str, content: dict[str, Any]) -> SendReceipt: ...

    async def presence_subscribe(self, jid: str) -> None: ...

    async def send_presence_update(self, presence: str, jid: str) -> None: ...

    async def read_messages(self, message_ids: list[str], jid: str) -> None: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def connect(self, session_id: str, auth_state: AuthState, events: TransportEvents) -> TransportHandle: ...
