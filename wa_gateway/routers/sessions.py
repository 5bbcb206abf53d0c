from fastapi import APIRouter, Depends, HTTPException, status

from wa_gateway.dependencies import Gateway, get_gateway
from wa_gateway.logging_config import get_logger
from wa_gateway.schemas.session import (
    QRRefreshResponse,
    SessionQRResponse,
    SessionResetResponse,
    SessionStartResponse,
    SessionStatusResponse,
    SessionStopResponse,
    SessionSummary,
)

logger = get_logger("routers.sessions")

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("/{session_id}/start", response_model=SessionStartResponse)
async def start_session(session_id: str, gateway: Gateway = Depends(get_gateway)):
    """Start a session, or return the existing one if its handle is live."""
    try:
        record = await gateway.sessions.start(session_id)
    except Exception as e:
        logger.error(f"start_failed for {session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="start_failed")
    return SessionStartResponse(
        sessionId=session_id,
        status=record.state.value,
        qr=record.pairing_code,
        startedAt=record.started_at,
        lastUpdate=record.last_update_at,
    )


@router.get("/{session_id}/status", response_model=SessionStatusResponse)
async def session_status(session_id: str, gateway: Gateway = Depends(get_gateway)):
    record = gateway.sessions.get(session_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="session_not_found")
    return SessionStatusResponse(
        sessionId=session_id,
        status=record.state.value,
        hasQR=bool(record.pairing_code),
        qrAt=record.pairing_code_issued_at,
        msToExpire=record.ms_to_expire(gateway.sessions.now()),
        lastUpdate=record.last_update_at,
        startedAt=record.started_at,
        reconnectAttempts=gateway.sessions.reconnect_attempts(session_id),
    )


@router.get("/{session_id}/qr", response_model=SessionQRResponse)
async def session_qr(session_id: str, gateway: Gateway = Depends(get_gateway)):
    record = gateway.sessions.get(session_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="session_not_found")
    return SessionQRResponse(sessionId=session_id, qr=record.pairing_code, qrAt=record.pairing_code_issued_at)


@router.get("", response_model=list[SessionSummary])
async def list_sessions(gateway: Gateway = Depends(get_gateway)):
    return [SessionSummary.from_record(record) for record in gateway.sessions.all()]


@router.post("/{session_id}/qr/refresh", response_model=QRRefreshResponse)
async def refresh_qr(session_id: str, gateway: Gateway = Depends(get_gateway)):
    """Force a fresh pairing code. Throttled to one refresh per minute per session."""
    try:
        record = await gateway.sessions.force_refresh(session_id)
    except Exception as e:
        logger.error(f"qr_refresh_failed for {session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="qr_refresh_failed")
    return QRRefreshResponse(
        sessionId=session_id,
        status=record.state.value,
        qr=record.pairing_code,
        qrAt=record.pairing_code_issued_at,
        lastUpdate=record.last_update_at,
    )


@router.delete("/{session_id}", response_model=SessionStopResponse)
async def stop_session(session_id: str, gateway: Gateway = Depends(get_gateway)):
    """Log out, drop queued jobs and purge stored credentials."""
    dropped = gateway.outbox.drop_session(session_id)
    await gateway.sessions.stop(session_id, purge=True)
    if dropped:
        logger.info(f"Dropped {dropped} queued jobs for {session_id}")
    return SessionStopResponse(sessionId=session_id)


@router.post("/{session_id}/reset", response_model=SessionResetResponse)
async def reset_session(session_id: str, gateway: Gateway = Depends(get_gateway)):
    try:
        record = await gateway.sessions.reset(session_id)
    except Exception as e:
        logger.error(f"reset_failed for {session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="reset_failed")
    return SessionResetResponse(sessionId=session_id, status=record.state.value)
