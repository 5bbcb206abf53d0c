from wa_gateway.transport.base import (
    AuthState,
    ConnectionUpdate,
    DisconnectReason,
    InboundMessage,
    SendReceipt,
    Transport,
    TransportError,
    TransportEvents,
    TransportHandle,
)
from wa_gateway.transport.bridge import BridgeTransport
from wa_gateway.transport.credentials import CredentialStore

__all__ = [
    "AuthState",
    "BridgeTransport",
    "ConnectionUpdate",
    "CredentialStore",
    "DisconnectReason",
    "InboundMessage",
    "SendReceipt",
    "Transport",
    "TransportError",
    "TransportEvents",
    "TransportHandle",
]
