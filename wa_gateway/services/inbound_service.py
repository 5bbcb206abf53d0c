"""Inbound message batches from transport handles."""

from typing import Any, Optional

from wa_gateway.logging_config import session_logger
from wa_gateway.services.activity_service import ContactActivity, is_opt_out_message
from wa_gateway.services.cooldown_service import CooldownLedger, contact_key
from wa_gateway.services.webhook_service import WebhookRelay
from wa_gateway.transport.base import InboundMessage, TransportHandle

OPT_OUT_CONFIRMATION = "Listo, no te enviaremos más mensajes. / Done, you will not receive more messages."


def webhook_payload(session_id: str, message: InboundMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "sessionId": session_id,
        "from": message.remote_jid,
        "messageId": message.message_id,
        "timestamp": message.timestamp * 1000 if message.timestamp else None,
        "type": message.message_type,
        "text": message.text,
    }
    if message.media:
        payload["media"] = message.media
    return payload


class InboundHandler:
    def __init__(
        self,
        activity: ContactActivity,
        cooldowns: CooldownLedger,
        relay: Optional[WebhookRelay] = None,
    ):
        self.activity = activity
        self.cooldowns = cooldowns
        self.relay = relay

    async def __call__(self, session_id: str, handle: TransportHandle, messages: list[InboundMessage]) -> None:
        for message in messages:
            await self.handle(session_id, handle, message)

    async def handle(self, session_id: str, handle: TransportHandle, message: InboundMessage) -> Optional[dict]:
        """Process one inbound message. Returns the relayed payload, if any."""
        if message.from_me or not message.remote_jid:
            return None
        log = session_logger("inbound_service", session_id)
        jid = message.remote_jid

        try:
            await handle.read_messages([message.message_id], jid)
        except Exception as e:
            log.debug("Mark-read failed", context={"jid": jid, "error": str(e)})

        self.activity.record_inbound(session_id, jid)
        self.cooldowns.clear(contact_key(session_id, jid))

        if is_opt_out_message(message.text):
            self.activity.opt_out(jid)
            log.info("Contact opted out", context={"jid": jid})
            try:
                await handle.send_message(jid, {"text": OPT_OUT_CONFIRMATION})
            except Exception as e:
                log.warning("Opt-out confirmation failed", context={"jid": jid, "error": str(e)})
            return None

        if self.activity.is_opted_out(jid):
            return None

        payload = webhook_payload(session_id, message)
        if self.relay is not None:
            self.relay.dispatch(payload)
        return payload
