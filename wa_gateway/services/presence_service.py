"""Human-like typing presence before sends and ahead of scheduled retries."""

import asyncio
import random
from typing import Optional

from wa_gateway.logging_config import get_logger
from wa_gateway.services.backoff import jitter
from wa_gateway.services.scheduler import SleepFunc, TaskScheduler
from wa_gateway.services.session_service import SessionService
from wa_gateway.transport.base import TransportHandle

logger = get_logger("presence_service")

MAX_TYPING_MS = 3000
TYPING_BASE_MS = 300
TYPING_MS_PER_CHAR = 18
MIN_BURST_MS = 900
MAX_BURST_MS = 3500
EARLY_BURST_LEAD_MS = 7000
LATE_BURST_LEAD_MS = 2000


def typing_duration_ms(text: str) -> int:
    return min(MAX_TYPING_MS, TYPING_BASE_MS + len(text or "") * TYPING_MS_PER_CHAR)


class PresenceSimulator:
    def __init__(
        self,
        sessions: SessionService,
        scheduler: TaskScheduler,
        sleep_func: SleepFunc = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.sessions = sessions
        self.scheduler = scheduler
        self._sleep = sleep_func
        self._rng = rng

    async def _compose(self, handle: TransportHandle, jid: str, duration_ms: int) -> None:
        await handle.presence_subscribe(jid)
        await handle.send_presence_update("available", jid)
        await handle.send_presence_update("composing", jid)
        await self._sleep(duration_ms / 1000)
        await handle.send_presence_update("paused", jid)

    async def simulate_typing(self, handle: TransportHandle, jid: str, text: str) -> None:
        """subscribe -> available -> composing -> wait -> paused; failures never block the send."""
        try:
            await self._compose(handle, jid, jitter(typing_duration_ms(text), 0.4, self._rng))
        except Exception as e:
            logger.debug(f"Presence simulation failed for {jid}: {e}")

    async def typing_burst(self, session_id: str, jid: str, duration_ms: int = 2200) -> None:
        record = self.sessions.get(session_id)
        if record is None or record.handle is None:
            return
        duration = max(MIN_BURST_MS, min(MAX_BURST_MS, duration_ms))
        try:
            await self._compose(record.handle, jid, jitter(duration, 0.3, self._rng))
        except Exception as e:
            logger.debug(f"Typing burst failed for {jid}: {e}")

    @staticmethod
    def _burst_prefix(session_id: str, jid: str) -> str:
        return f"typing:{session_id}:{jid}:"

    def schedule_bursts(self, session_id: str, jid: str, eta_ms: int) -> None:
        """Arm two bursts that finish shortly before a retry fires at ``eta_ms``."""
        self.clear_bursts(session_id, jid)
        prefix = self._burst_prefix(session_id, jid)
        early = max(eta_ms - EARLY_BURST_LEAD_MS, 0)
        late = max(eta_ms - LATE_BURST_LEAD_MS, 0)
        if eta_ms > 1500 and early > 0:
            self.scheduler.schedule(f"{prefix}early", early, lambda: self.typing_burst(session_id, jid, 2200))
        if eta_ms > 800 and late > 0:
            self.scheduler.schedule(f"{prefix}late", late, lambda: self.typing_burst(session_id, jid, 1600))

    def clear_bursts(self, session_id: str, jid: str) -> None:
        self.scheduler.cancel_prefix(self._burst_prefix(session_id, jid))

    def pending_bursts(self, session_id: str, jid: str) -> list[str]:
        prefix = self._burst_prefix(session_id, jid)
        return [key for key in self.scheduler.keys() if key.startswith(prefix)]
