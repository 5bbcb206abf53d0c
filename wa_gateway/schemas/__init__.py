from wa_gateway.schemas.message import SendMessageRequest
from wa_gateway.schemas.session import (
    QRRefreshResponse,
    SessionQRResponse,
    SessionResetResponse,
    SessionStartResponse,
    SessionStatusResponse,
    SessionStopResponse,
    SessionSummary,
)

__all__ = [
    "SendMessageRequest",
    "SessionSummary",
    "SessionStartResponse",
    "SessionStatusResponse",
    "SessionQRResponse",
    "QRRefreshResponse",
    "SessionResetResponse",
    "SessionStopResponse",
]
