"""Delivery executor: presence simulation followed by the transport send."""

import asyncio
import random
from typing import TYPE_CHECKING, Optional

from wa_gateway.logging_config import session_logger
from wa_gateway.services.alert_service import AlertService
from wa_gateway.services.backoff import jitter
from wa_gateway.services.cooldown_service import contact_key
from wa_gateway.services.governor import RAPID_FIRE_COOLDOWN_MS, OutboundGovernor
from wa_gateway.services.presence_service import PresenceSimulator
from wa_gateway.services.scheduler import SleepFunc
from wa_gateway.transport.base import SendReceipt, TransportError

if TYPE_CHECKING:
    from wa_gateway.services.outbox_service import OutboxJob, OutboxScheduler

PROVIDER_RISK_MARKERS = ("not-authorized", "blocked", "429")
SEND_ERROR_RETRY_MS = 60_000


def is_provider_risk(error: Exception) -> bool:
    if isinstance(error, TransportError) and error.status_code == 429:
        return True
    message = str(error).lower()
    return any(marker in message for marker in PROVIDER_RISK_MARKERS)


class DeliveryExecutor:
    def __init__(
        self,
        governor: OutboundGovernor,
        presence: PresenceSimulator,
        outbox: "OutboxScheduler",
        *,
        alerts: Optional[AlertService] = None,
        sleep_func: SleepFunc = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.governor = governor
        self.presence = presence
        self.outbox = outbox
        self.alerts = alerts
        self._sleep = sleep_func
        self._rng = rng

    async def send(
        self, session_id: str, jid: str, text: str, job: Optional["OutboxJob"] = None
    ) -> SendReceipt:
        """Send ``text`` to ``jid``; on failure the error is re-raised after bookkeeping."""
        log = session_logger("delivery_service", session_id)
        record = self.governor.sessions.get(session_id)
        if record is None or record.handle is None:
            error = TransportError("session_not_active")
            self._on_failure(session_id, jid, error, job)
            raise error
        handle = record.handle

        try:
            await self.presence.simulate_typing(handle, jid, text)
            await self._sleep(jitter(600, 0.6, self._rng) / 1000)
            receipt = await handle.send_message(jid, {"text": text.strip()})
        except Exception as e:
            log.warning("Send failed", context={"jid": jid, "error": str(e), "job_id": job.id if job else None})
            self._on_failure(session_id, jid, e, job)
            raise

        self.governor.blast.register(session_id, text, jid)
        self.governor.activity.record_sent(session_id, jid)
        self.presence.clear_bursts(session_id, jid)
        if job is not None:
            self.outbox.complete(job)
        log.info("Message sent", context={"jid": jid, "message_id": receipt.message_id})
        return receipt

    def _on_failure(self, session_id: str, jid: str, error: Exception, job: Optional["OutboxJob"]) -> None:
        if is_provider_risk(error):
            minutes = self.governor.register_provider_risk(session_id)
            if self.alerts is not None:
                self.alerts.notify(
                    "ERROR",
                    "Provider risk signal; session paused",
                    {"session_id": session_id, "pause_minutes": minutes, "error": str(error)},
                )

        self.governor.cooldowns.set(contact_key(session_id, jid), RAPID_FIRE_COOLDOWN_MS, "retry_after_error")
        if job is not None:
            self.outbox.record_failure(job, SEND_ERROR_RETRY_MS + jitter(300, 0.5, self._rng), str(error))
