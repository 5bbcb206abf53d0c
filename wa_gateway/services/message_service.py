"""Outbound send requests: governance decision mapped to an HTTP-ready outcome."""

import random
from dataclasses import dataclass, field
from typing import Any, Optional

from wa_gateway.logging_config import session_logger
from wa_gateway.services.backoff import jitter
from wa_gateway.services.delivery_service import DeliveryExecutor
from wa_gateway.services.governor import RAPID_FIRE_WINDOW_MS, Defer, OutboundGovernor, Reject
from wa_gateway.services.outbox_service import OutboxScheduler

USER_JID_SUFFIX = "@s.whatsapp.net"

REJECT_STATUS = {
    "outside_business_hours": 423,
    "session_paused": 503,
    "session_not_found_or_inactive": 404,
    "session_not_active": 409,
    "recipient_opted_out": 403,
    "anti_blast_triggered": 429,
    "no_links_on_cold_start": 400,
    "rate_limited": 429,
    "daily_cap_reached": 429,
}


def normalize_jid(to: str) -> str:
    to = to.strip()
    return to if "@" in to else f"{to}{USER_JID_SUFFIX}"


@dataclass
class SendOutcome:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


class MessageService:
    def __init__(
        self,
        governor: OutboundGovernor,
        outbox: OutboxScheduler,
        executor: DeliveryExecutor,
        rng: Optional[random.Random] = None,
    ):
        self.governor = governor
        self.outbox = outbox
        self.executor = executor
        self._rng = rng

    async def submit(self, session_id: str, to: str, text: str) -> SendOutcome:
        jid = normalize_jid(to)
        log = session_logger("message_service", session_id)
        decision = self.governor.evaluate(session_id, jid, text)

        if isinstance(decision, Reject):
            return self._rejected(decision)

        pending = self.outbox.has_pending(session_id, jid)

        if isinstance(decision, Defer):
            job = self.outbox.enqueue(session_id, jid, text)
            eta = decision.delay_ms + jitter(200, 0.5, self._rng)
            # A non-empty queue already owns the retry timer; this job waits its turn.
            if not pending:
                self.outbox.schedule_retry(job, eta)
            return self._queued(job.id, decision.reason, eta)

        if pending:
            job = self.outbox.enqueue(session_id, jid, text)
            log.info("Admitted message queued behind pending jobs", context={"jid": jid, "job_id": job.id})
            return self._queued(job.id, "outbox_pending", RAPID_FIRE_WINDOW_MS)

        try:
            receipt = await self.executor.send(session_id, jid, text)
        except Exception as e:
            return SendOutcome(500, {"error": "send_failed", "detail": str(e)})

        response = dict(receipt.raw)
        response.setdefault("key", {"remoteJid": jid, "fromMe": True, "id": receipt.message_id})
        return SendOutcome(200, {"ok": True, "response": response})

    @staticmethod
    def _queued(job_id: str, reason: str, retry_in_ms: int) -> SendOutcome:
        return SendOutcome(202, {"queued": True, "jobId": job_id, "reason": reason, "retry_in_ms": retry_in_ms})

    @staticmethod
    def _rejected(decision: Reject) -> SendOutcome:
        body: dict[str, Any] = {"error": decision.code}
        if decision.retry_in_ms is not None:
            body["retry_in_ms"] = decision.retry_in_ms
        if decision.strikes is not None:
            body["strikes"] = decision.strikes
        return SendOutcome(REJECT_STATUS.get(decision.code, 400), body)
