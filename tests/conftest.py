import asyncio
import random
from typing import Any, Optional

import pytest

from wa_gateway.config import Settings
from wa_gateway.dependencies import build_gateway
from wa_gateway.services.scheduler import TaskScheduler
from wa_gateway.transport.base import AuthState, ConnectionUpdate, InboundMessage, SendReceipt

# 2024-01-15 15:00 UTC, i.e. 10:00 at UTC-5 (inside business hours).
BUSINESS_NOON_MS = 1_705_330_800_000


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: int = BUSINESS_NOON_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class ManualSleep:
    """Sleep that blocks until released by the test."""

    def __init__(self):
        self.calls: list[tuple[float, asyncio.Future]] = []

    async def __call__(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self.calls.append((seconds, future))
        await future

    @property
    def durations(self) -> list[float]:
        return [seconds for seconds, _ in self.calls]

    @property
    def waiting(self) -> int:
        return sum(1 for _, future in self.calls if not future.done())

    async def release_all(self) -> None:
        await settle()
        for _, future in list(self.calls):
            if not future.done():
                future.set_result(None)
        await settle()


async def instant_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeHandle:
    """In-memory transport handle recording every call."""

    def __init__(self, session_id: str, events: Any):
        self.session_id = session_id
        self.events = events
        self.sent: list[tuple[str, dict]] = []
        self.presence: list[tuple[str, str]] = []
        self.read: list[tuple[list[str], str]] = []
        self.send_error: Optional[Exception] = None
        self.logged_out = False
        self.closed = False
        self._seq = 0

    async def send_message(self, jid: str, content: dict[str, Any]) -> SendReceipt:
        if self.send_error is not None:
            raise self.send_error
        self._seq += 1
        self.sent.append((jid, content))
        message_id = f"MSG{self._seq}"
        return SendReceipt(message_id=message_id, raw={"key": {"remoteJid": jid, "fromMe": True, "id": message_id}})

    async def presence_subscribe(self, jid: str) -> None:
        self.presence.append(("subscribe", jid))

    async def send_presence_update(self, presence: str, jid: str) -> None:
        self.presence.append((presence, jid))

    async def read_messages(self, message_ids: list[str], jid: str) -> None:
        self.read.append((message_ids, jid))

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True

    async def emit_open(self) -> None:
        await self.events.on_connection_update(self, ConnectionUpdate(connection="open"))

    async def emit_close(self, status_code: int) -> None:
        await self.events.on_connection_update(self, ConnectionUpdate(connection="close", status_code=status_code))

    async def emit_pairing_code(self, code: str) -> None:
        await self.events.on_connection_update(self, ConnectionUpdate(connection="connecting", pairing_code=code))

    async def emit_messages(self, messages: list[InboundMessage]) -> None:
        await self.events.on_messages(self, messages)

    async def emit_creds(self, creds: dict[str, Any]) -> None:
        await self.events.on_credentials_update(self, creds)


class FakeTransport:
    def __init__(self, auto_open: bool = False):
        self.auto_open = auto_open
        self.handles: list[FakeHandle] = []
        self.auth_states: list[AuthState] = []
        self.connect_error: Optional[Exception] = None

    async def connect(self, session_id: str, auth_state: AuthState, events: Any) -> FakeHandle:
        if self.connect_error is not None:
            raise self.connect_error
        handle = FakeHandle(session_id, events)
        self.handles.append(handle)
        self.auth_states.append(auth_state)
        if self.auto_open:
            asyncio.get_running_loop().create_task(handle.emit_open())
        return handle

    @property
    def last(self) -> FakeHandle:
        return self.handles[-1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manual_sleep():
    return ManualSleep()


@pytest.fixture
def rng():
    return random.Random(7)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(auth_root=str(tmp_path / "auth"), api_key="", webhook_url=None)


@pytest.fixture
def build(test_settings, transport, clock, manual_sleep, rng):
    """Gateway with timers driven by ``manual_sleep`` and instant presence/send pauses."""

    def _build(**overrides):
        settings = test_settings.model_copy(update=overrides) if overrides else test_settings
        return build_gateway(
            settings,
            transport,
            clock=clock,
            sleep_func=instant_sleep,
            scheduler=TaskScheduler(manual_sleep),
            rng=rng,
        )

    return _build


async def open_session(gateway, transport: FakeTransport, session_id: str = "acct1") -> FakeHandle:
    await gateway.sessions.start(session_id)
    handle = transport.last
    await handle.emit_open()
    return handle
