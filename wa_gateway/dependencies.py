"""Gateway container: one instance of every store and service, wired together."""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from wa_gateway.config import Settings
from wa_gateway.services.activity_service import ContactActivity, DailyCounters
from wa_gateway.services.alert_service import AlertService
from wa_gateway.services.blast_detector import BlastDetector
from wa_gateway.services.cooldown_service import CooldownLedger, PauseLedger
from wa_gateway.services.delivery_service import DeliveryExecutor
from wa_gateway.services.governor import OutboundGovernor
from wa_gateway.services.inbound_service import InboundHandler
from wa_gateway.services.message_service import MessageService
from wa_gateway.services.outbox_service import OutboxScheduler
from wa_gateway.services.presence_service import PresenceSimulator
from wa_gateway.services.scheduler import SleepFunc, TaskScheduler
from wa_gateway.services.session_service import SessionService
from wa_gateway.services.token_bucket import TokenBucketLimiter
from wa_gateway.services.webhook_service import WebhookRelay
from wa_gateway.transport.base import Transport
from wa_gateway.transport.bridge import BridgeTransport
from wa_gateway.transport.credentials import CredentialStore


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Gateway:
    settings: Settings
    scheduler: TaskScheduler
    sessions: SessionService
    cooldowns: CooldownLedger
    pauses: PauseLedger
    governor: OutboundGovernor
    outbox: OutboxScheduler
    executor: DeliveryExecutor
    messages: MessageService
    inbound: InboundHandler
    relay: WebhookRelay
    alerts: AlertService

    async def shutdown(self) -> None:
        self.scheduler.cancel_all()
        await self.relay.drain()
        await self.alerts.drain()
        await self.sessions.shutdown()


def build_gateway(
    settings: Settings,
    transport: Optional[Transport] = None,
    *,
    clock: Callable[[], int] = _now_ms,
    sleep_func: SleepFunc = asyncio.sleep,
    scheduler: Optional[TaskScheduler] = None,
    rng: Optional[random.Random] = None,
) -> Gateway:
    transport = transport or BridgeTransport(settings.bridge_url, settings.bridge_token)
    alerts = AlertService(settings.alert_bot_token, settings.alert_chat_id)
    scheduler = scheduler or TaskScheduler(sleep_func)

    sessions = SessionService(
        transport,
        CredentialStore(settings.auth_root),
        scheduler,
        auto_purge_on_logout=settings.auto_purge_on_logout,
        alerts=alerts,
        clock=clock,
        rng=rng,
    )
    cooldowns = CooldownLedger(clock)
    pauses = PauseLedger(clock)
    activity = ContactActivity(clock)
    governor = OutboundGovernor(
        sessions,
        cooldowns,
        pauses,
        BlastDetector(clock),
        TokenBucketLimiter(clock),
        activity,
        DailyCounters(clock),
        tz_offset_hours=settings.business_tz_offset_hours,
        business_start_hour=settings.business_hours_start,
        business_end_hour=settings.business_hours_end,
        clock=clock,
        rng=rng,
    )
    presence = PresenceSimulator(sessions, scheduler, sleep_func=sleep_func, rng=rng)
    outbox = OutboxScheduler(
        governor,
        presence,
        scheduler,
        max_send_failures=settings.outbox_max_send_failures,
        alerts=alerts,
        clock=clock,
        rng=rng,
    )
    executor = DeliveryExecutor(governor, presence, outbox, alerts=alerts, sleep_func=sleep_func, rng=rng)
    outbox.executor = executor

    relay = WebhookRelay(settings.webhook_url, sleep_func=sleep_func)
    inbound = InboundHandler(activity, cooldowns, relay)
    sessions.set_message_handler(inbound)

    return Gateway(
        settings=settings,
        scheduler=scheduler,
        sessions=sessions,
        cooldowns=cooldowns,
        pauses=pauses,
        governor=governor,
        outbox=outbox,
        executor=executor,
        messages=MessageService(governor, outbox, executor, rng=rng),
        inbound=inbound,
        relay=relay,
        alerts=alerts,
    )


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway
