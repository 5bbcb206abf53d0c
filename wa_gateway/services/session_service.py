"""Session lifecycle: transport handles, pairing-code watchdog, reconnects.

Each session is a small state machine (connecting / active / inactive)
driven by events from its current transport handle. Events coming from a
handle that is no longer the session's current one are ignored, so a
superseded connection can never move the state.
"""

import asyncio
import contextlib
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from wa_gateway.logging_config import get_logger, session_logger
from wa_gateway.services.alert_service import AlertService
from wa_gateway.services.backoff import ReconnectBackoff
from wa_gateway.services.scheduler import TaskScheduler
from wa_gateway.services.session_state import (
    SessionState,
    connection_dropped,
    connection_opened,
    logged_out,
    restarting,
)
from wa_gateway.transport.base import (
    ConnectionUpdate,
    DisconnectReason,
    InboundMessage,
    Transport,
    TransportHandle,
)
from wa_gateway.transport.credentials import CredentialStore

logger = get_logger("session_service")

QR_TTL_MS = 60_000
WATCHDOG_INTERVAL_MS = 5_000
FORCE_REFRESH_INTERVAL_MS = 60_000

MessageHandler = Callable[[str, TransportHandle, list[InboundMessage]], Awaitable[None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionRecord:
    id: str
    started_at: int
    last_update_at: int
    state: SessionState = SessionState.CONNECTING
    handle: Optional[TransportHandle] = None
    pairing_code: Optional[str] = None
    pairing_code_issued_at: Optional[int] = None
    handle_opened_at: Optional[int] = None
    backoff_attempts: int = 0

    @property
    def is_live(self) -> bool:
        return self.state == SessionState.ACTIVE and self.handle is not None

    def ms_to_expire(self, now: int) -> Optional[int]:
        if not self.pairing_code_issued_at:
            return None
        return max(0, QR_TTL_MS - (now - self.pairing_code_issued_at))


class _SessionEvents:
    """Routes transport callbacks to the owning session."""

    def __init__(self, service: "SessionService", session_id: str):
        self._service = service
        self._session_id = session_id

    async def on_connection_update(self, handle: TransportHandle, update: ConnectionUpdate) -> None:
        await self._service.dispatch(self._session_id, handle, self._service.handle_connection_update, update)

    async def on_messages(self, handle: TransportHandle, messages: list[InboundMessage]) -> None:
        await self._service.dispatch(self._session_id, handle, self._service.handle_messages, messages)

    async def on_credentials_update(self, handle: TransportHandle, creds: dict[str, Any]) -> None:
        await self._service.dispatch(self._session_id, handle, self._service.handle_credentials, creds)


class SessionService:
    def __init__(
        self,
        transport: Transport,
        credentials: CredentialStore,
        scheduler: TaskScheduler,
        *,
        auto_purge_on_logout: bool = False,
        alerts: Optional[AlertService] = None,
        clock: Callable[[], int] = _now_ms,
        rng: Optional[random.Random] = None,
    ):
        self._transport = transport
        self._credentials = credentials
        self._scheduler = scheduler
        self._auto_purge_on_logout = auto_purge_on_logout
        self._alerts = alerts
        self._clock = clock
        self._backoff = ReconnectBackoff(rng)
        self._sessions: dict[str, SessionRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_force: dict[str, int] = {}
        self._message_handler: Optional[MessageHandler] = None

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    # Accessors

    def now(self) -> int:
        return self._clock()

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(session_id)

    def all(self) -> list[SessionRecord]:
        return list(self._sessions.values())

    def is_live(self, session_id: str) -> bool:
        record = self._sessions.get(session_id)
        return record is not None and record.is_live

    def reconnect_attempts(self, session_id: str) -> int:
        return self._backoff.attempts(session_id)

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def _touch(self, record: SessionRecord) -> None:
        record.last_update_at = self._clock()

    def _set_state(self, record: SessionRecord, target: SessionState) -> None:
        if record.state == target and target != SessionState.CONNECTING:
            return
        if target == SessionState.ACTIVE:
            record.state = connection_opened(record.state)
        elif target == SessionState.INACTIVE:
            record.state = logged_out(record.state)
        elif record.state == SessionState.ACTIVE:
            record.state = connection_dropped(record.state)
        else:
            record.state = restarting(record.state)
        self._touch(record)

    # Lifecycle operations

    async def start(self, session_id: str) -> SessionRecord:
        async with self._lock(session_id):
            return await self._start_locked(session_id)

    async def _start_locked(self, session_id: str) -> SessionRecord:
        log = session_logger("session_service", session_id)
        existing = self._sessions.get(session_id)
        if existing is not None and existing.is_live:
            log.info("Start reuses active transport handle")
            return existing

        self._scheduler.cancel(self._reconnect_key(session_id))
        if existing is not None and existing.handle is not None:
            stale, existing.handle = existing.handle, None
            await self._close_quietly(stale)

        auth_state = self._credentials.load(session_id)
        handle = await self._transport.connect(session_id, auth_state, _SessionEvents(self, session_id))

        now = self._clock()
        record = existing or SessionRecord(id=session_id, started_at=now, last_update_at=now)
        if existing is not None:
            self._set_state(record, SessionState.CONNECTING)
        record.handle = handle
        record.handle_opened_at = now
        record.pairing_code = None
        record.pairing_code_issued_at = None
        record.backoff_attempts = self._backoff.attempts(session_id)
        self._touch(record)
        self._sessions[session_id] = record
        self._arm_watchdog(session_id)

        log.info("Transport handle opened", context={"registered": auth_state.is_registered})
        return record

    async def force_refresh(self, session_id: str) -> SessionRecord:
        """Drop the current handle and reconnect to obtain a fresh pairing code."""
        log = session_logger("session_service", session_id)
        now = self._clock()
        if now - self._last_force.get(session_id, 0) < FORCE_REFRESH_INTERVAL_MS:
            log.info("Pairing code refresh throttled")
            record = self._sessions.get(session_id)
            return record if record is not None else await self.start(session_id)
        self._last_force[session_id] = now

        async with self._lock(session_id):
            record = self._sessions.get(session_id)
            if record is None:
                log.info("Refresh requested for unknown session; starting it")
                return await self._start_locked(session_id)

            self._scheduler.cancel(self._reconnect_key(session_id))
            handle, record.handle = record.handle, None
            record.pairing_code = None
            record.pairing_code_issued_at = None
            self._set_state(record, SessionState.CONNECTING)
            if handle is not None:
                await self._close_quietly(handle)
            log.info("Refreshing pairing code")
            return await self._start_locked(session_id)

    async def reset(self, session_id: str) -> SessionRecord:
        """Log out, purge credentials and pair again from scratch."""
        async with self._lock(session_id):
            await self._teardown(session_id, logout=True)
            self._credentials.purge(session_id)
            return await self._start_locked(session_id)

    async def stop(self, session_id: str, purge: bool = False) -> bool:
        async with self._lock(session_id):
            existed = await self._teardown(session_id, logout=True)
            if purge:
                self._credentials.purge(session_id)
        self._last_force.pop(session_id, None)
        return existed

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            with contextlib.suppress(Exception):
                await self._teardown(session_id, logout=False)

    async def _teardown(self, session_id: str, *, logout: bool) -> bool:
        record = self._sessions.pop(session_id, None)
        self._scheduler.cancel(self._watchdog_key(session_id))
        self._scheduler.cancel(self._reconnect_key(session_id))
        self._backoff.reset(session_id)
        if record is None:
            return False
        handle, record.handle = record.handle, None
        if handle is not None:
            if logout:
                try:
                    await handle.logout()
                except Exception as e:
                    logger.warning(f"Logout failed for {session_id}: {e}")
            await self._close_quietly(handle)
        logger.info(f"Session {session_id} torn down", extra={"context": {"logout": logout}})
        return True

    async def _close_quietly(self, handle: TransportHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing transport handle: {e}")

    # Watchdog and reconnect timers

    @staticmethod
    def _watchdog_key(session_id: str) -> str:
        return f"watchdog:{session_id}"

    @staticmethod
    def _reconnect_key(session_id: str) -> str:
        return f"reconnect:{session_id}"

    def _arm_watchdog(self, session_id: str) -> None:
        self._scheduler.schedule(
            self._watchdog_key(session_id), WATCHDOG_INTERVAL_MS, lambda: self._watchdog_tick(session_id)
        )

    async def _watchdog_tick(self, session_id: str) -> None:
        record = self._sessions.get(session_id)
        if record is None or record.state != SessionState.CONNECTING:
            return

        now = self._clock()
        issued_at = record.pairing_code_issued_at or record.handle_opened_at
        if record.handle is not None and issued_at and now - issued_at > QR_TTL_MS:
            session_logger("session_service", session_id).info(
                "Pairing code expired; closing handle to obtain a new one"
            )
            record.pairing_code = None
            record.pairing_code_issued_at = None
            record.handle_opened_at = now
            self._touch(record)
            await self._close_quietly(record.handle)

        if session_id in self._sessions:
            self._arm_watchdog(session_id)

    async def _restart(self, session_id: str) -> None:
        async with self._lock(session_id):
            record = self._sessions.get(session_id)
            # A manual start may have replaced the handle while this timer waited.
            if record is None or record.handle is not None:
                return
            try:
                await self._start_locked(session_id)
            except Exception as e:
                logger.error(f"Restart failed for {session_id}: {e}")
                record.handle = None
                record.pairing_code = None
                self._set_state(record, SessionState.INACTIVE)
                self._scheduler.cancel(self._watchdog_key(session_id))

    # Transport events

    async def dispatch(self, session_id: str, handle: TransportHandle, fn, payload) -> None:
        record = self._sessions.get(session_id)
        if record is None or record.handle is not handle:
            logger.debug(f"Ignoring event from superseded handle for {session_id}")
            return
        try:
            await fn(record, handle, payload)
        except Exception:
            logger.exception("Transport event handling failed", extra={"context": {"session_id": session_id}})

    async def handle_connection_update(
        self, record: SessionRecord, handle: TransportHandle, update: ConnectionUpdate
    ) -> None:
        log = session_logger("session_service", record.id)
        if update.pairing_code:
            record.pairing_code = update.pairing_code
            record.pairing_code_issued_at = self._clock()
            self._touch(record)
            log.info("Pairing code received")

        if update.connection == "open":
            self._backoff.reset(record.id)
            record.backoff_attempts = 0
            record.pairing_code = None
            record.pairing_code_issued_at = None
            self._set_state(record, SessionState.ACTIVE)
            self._scheduler.cancel(self._watchdog_key(record.id))
            log.info("Session active")
        elif update.connection == "close":
            await self._handle_close(record, update.status_code or 0)

    async def _handle_close(self, record: SessionRecord, status_code: int) -> None:
        log = session_logger("session_service", record.id)
        record.handle = None
        log.info("Connection closed", context={"status_code": status_code})

        if status_code == DisconnectReason.LOGGED_OUT:
            if self._auto_purge_on_logout:
                self._credentials.purge(record.id)
            record.pairing_code = None
            self._set_state(record, SessionState.INACTIVE)
            self._scheduler.cancel(self._watchdog_key(record.id))
            self._scheduler.cancel(self._reconnect_key(record.id))
            log.warning("Session logged out")
            if self._alerts is not None:
                self._alerts.notify("WARNING", "Session logged out", {"session_id": record.id})
            return

        self._set_state(record, SessionState.CONNECTING)
        delay = self._backoff.next_delay(record.id)
        record.backoff_attempts = self._backoff.attempts(record.id)
        log.info("Reconnect scheduled", context={"delay_ms": delay, "attempt": record.backoff_attempts})
        self._scheduler.schedule(self._reconnect_key(record.id), delay, lambda: self._restart(record.id))

    async def handle_messages(
        self, record: SessionRecord, handle: TransportHandle, messages: list[InboundMessage]
    ) -> None:
        if self._message_handler is not None:
            await self._message_handler(record.id, handle, messages)

    async def handle_credentials(self, record: SessionRecord, handle: TransportHandle, creds: dict[str, Any]) -> None:
        self._credentials.save(record.id, creds)
        logger.debug(f"Credentials saved for {record.id}")
