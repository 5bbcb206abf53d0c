from typing import Optional

from pydantic import BaseModel

from wa_gateway.services.session_service import SessionRecord


class SessionSummary(BaseModel):
    sessionId: str
    status: str
    hasQR: bool
    startedAt: Optional[int] = None
    lastUpdate: Optional[int] = None

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionSummary":
        return cls(
            sessionId=record.id,
            status=record.state.value,
            hasQR=bool(record.pairing_code),
            startedAt=record.started_at,
            lastUpdate=record.last_update_at,
        )


class SessionStartResponse(BaseModel):
    sessionId: str
    status: str
    qr: Optional[str] = None
    startedAt: Optional[int] = None
    lastUpdate: Optional[int] = None


class SessionStatusResponse(BaseModel):
    sessionId: str
    status: str
    hasQR: bool
    qrAt: Optional[int] = None
    msToExpire: Optional[int] = None
    lastUpdate: Optional[int] = None
    startedAt: Optional[int] = None
    reconnectAttempts: int = 0


class SessionQRResponse(BaseModel):
    sessionId: str
    qr: Optional[str] = None
    qrAt: Optional[int] = None


class QRRefreshResponse(BaseModel):
    ok: bool = True
    sessionId: str
    status: str
    qr: Optional[str] = None
    qrAt: Optional[int] = None
    lastUpdate: Optional[int] = None


class SessionResetResponse(BaseModel):
    ok: bool = True
    sessionId: str
    status: str


class SessionStopResponse(BaseModel):
    ok: bool = True
    sessionId: str
