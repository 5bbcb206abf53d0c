"""WebSocket bridge transport.

Each session handle owns one WebSocket to an external device bridge. The
gateway sends ``hello`` first (token, session id, stored credentials), then
issues ``request`` frames correlated by ``requestId``. The bridge pushes
``connection.update``, ``messages.upsert`` and ``creds.update`` frames.
Inbound batches are handed to a separate worker so handlers may issue
requests of their own while the reader keeps resolving responses.
"""

import asyncio
import contextlib
import json
import uuid
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from wa_gateway.logging_config import get_logger
from wa_gateway.transport.base import (
    AuthState,
    ConnectionUpdate,
    DisconnectReason,
    InboundMessage,
    SendReceipt,
    TransportError,
    TransportEvents,
)

logger = get_logger("bridge")

REQUEST_TIMEOUT_SECONDS = 20.0
MAX_FRAME_BYTES = 16 * 1024 * 1024


def parse_inbound_message(payload: dict[str, Any]) -> Optional[InboundMessage]:
    message_id = str(payload.get("messageId") or "").strip()
    remote_jid = str(payload.get("remoteJid") or "").strip()
    if not message_id or not remote_jid:
        return None
    timestamp_raw = payload.get("timestamp")
    media = payload.get("media") if isinstance(payload.get("media"), dict) else None
    return InboundMessage(
        message_id=message_id,
        remote_jid=remote_jid,
        from_me=bool(payload.get("fromMe", False)),
        timestamp=int(timestamp_raw) if isinstance(timestamp_raw, (int, float)) else 0,
        message_type=str(payload.get("type") or "unknown"),
        text=str(payload.get("text") or ""),
        media=media,
    )


class BridgeHandle:
    def __init__(self, session_id: str, ws: Any, events: TransportEvents):
        self.session_id = session_id
        self._ws = ws
        self._events = events
        self._pending: dict[str, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._inbound_task: Optional[asyncio.Task] = None
        self._closed = False
        self._close_reported = False

    def start_reader(self) -> None:
        self._reader_task = asyncio.create_task(self._read_loop())
        self._inbound_task = asyncio.create_task(self._inbound_loop())

    async def _inbound_loop(self) -> None:
        while True:
            messages = await self._inbound.get()
            if messages is None:
                return
            try:
                await self._events.on_messages(self, messages)
            except Exception:
                logger.exception("Inbound handler failed", extra={"context": {"session_id": self.session_id}})

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                await self._handle_frame(raw)
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Bridge reader failed", extra={"context": {"session_id": self.session_id}})
        finally:
            self._fail_pending("bridge connection closed")
            self._inbound.put_nowait(None)
            if not self._close_reported:
                self._close_reported = True
                await self._events.on_connection_update(
                    self, ConnectionUpdate(connection="close", status_code=int(DisconnectReason.CONNECTION_CLOSED))
                )

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid JSON from bridge", extra={"context": {"session_id": self.session_id}})
            return
        if not isinstance(frame, dict):
            return

        frame_type = frame.get("type")
        payload = frame.get("payload") if isinstance(frame.get("payload"), dict) else {}

        if frame_type == "response":
            self._resolve(frame)
        elif frame_type == "connection.update":
            update = ConnectionUpdate(
                connection=payload.get("connection"),
                status_code=payload.get("statusCode"),
                pairing_code=payload.get("qr"),
                error=payload.get("error"),
            )
            if update.connection == "close":
                self._close_reported = True
            await self._events.on_connection_update(self, update)
        elif frame_type == "messages.upsert":
            raw_messages = payload.get("messages") if isinstance(payload.get("messages"), list) else []
            messages = [m for m in (parse_inbound_message(p) for p in raw_messages if isinstance(p, dict)) if m]
            if messages:
                self._inbound.put_nowait(messages)
        elif frame_type == "creds.update":
            creds = payload.get("creds")
            if isinstance(creds, dict):
                await self._events.on_credentials_update(self, creds)
        else:
            logger.debug(f"Ignoring bridge frame type={frame_type}")

    def _resolve(self, frame: dict[str, Any]) -> None:
        future = self._pending.pop(str(frame.get("requestId")), None)
        if future is None or future.done():
            return
        if frame.get("ok"):
            future.set_result(frame.get("payload") or {})
            return
        error = frame.get("error") if isinstance(frame.get("error"), dict) else {}
        future.set_exception(
            TransportError(str(error.get("message") or "bridge_error"), status_code=error.get("statusCode"))
        )

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))
        self._pending.clear()

    async def _request(self, action: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self._closed:
            raise TransportError("handle closed")
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(
                json.dumps({"type": "request", "requestId": request_id, "action": action, "payload": payload})
            )
            return await asyncio.wait_for(future, timeout=REQUEST_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            raise TransportError(f"{action} timed out") from e
        except ConnectionClosed as e:
            raise TransportError(f"{action} failed: connection closed") from e
        finally:
            self._pending.pop(request_id, None)

    async def send_message(self, jid: str, content: dict[str, Any]) -> SendReceipt:
        result = await self._request("send", {"jid": jid, "content": content})
        key = result.get("key") if isinstance(result.get("key"), dict) else {}
        return SendReceipt(message_id=key.get("id") or result.get("messageId"), raw=result)

    async def presence_subscribe(self, jid: str) -> None:
        await self._request("presenceSubscribe", {"jid": jid})

    async def send_presence_update(self, presence: str, jid: str) -> None:
        await self._request("presence", {"presence": presence, "jid": jid})

    async def read_messages(self, message_ids: list[str], jid: str) -> None:
        await self._request("read", {"messageIds": message_ids, "jid": jid})

    async def logout(self) -> None:
        await self._request("logout", {})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(Exception):
            await self._ws.close()


class BridgeTransport:
    def __init__(self, url: str, token: str = ""):
        self.url = url
        self.token = token

    async def connect(self, session_id: str, auth_state: AuthState, events: TransportEvents) -> BridgeHandle:
        try:
            ws = await websockets.connect(self.url, max_size=MAX_FRAME_BYTES, ping_interval=20, ping_timeout=20)
        except OSError as e:
            raise TransportError(f"bridge unreachable at {self.url}: {e}") from e
        await ws.send(
            json.dumps(
                {
                    "type": "hello",
                    "token": self.token,
                    "sessionId": session_id,
                    "creds": auth_state.creds,
                }
            )
        )
        handle = BridgeHandle(session_id, ws, events)
        handle.start_reader()
        logger.info(f"Bridge socket opened for {session_id}")
        return handle
