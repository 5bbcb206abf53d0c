"""Outbound governance: admit, defer or reject each candidate message.

Rules are evaluated in a fixed order and the first match wins. Detection
rules escalate cooldown strikes as a side effect, so every offending
attempt is reflected in governance state.
"""

import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from wa_gateway.logging_config import get_logger
from wa_gateway.services.activity_service import ContactActivity, DailyCounters
from wa_gateway.services.backoff import jitter
from wa_gateway.services.blast_detector import BlastDetector
from wa_gateway.services.cooldown_service import (
    CooldownLedger,
    PauseLedger,
    contact_key,
    session_key,
)
from wa_gateway.services.session_service import SessionService
from wa_gateway.services.token_bucket import TokenBucketLimiter

logger = get_logger("governor")

DAY_MS = 24 * 60 * 60 * 1000

CONTACT_COOLDOWN_BASE_MS = 30_000
RAPID_FIRE_WINDOW_MS = 15_000
RAPID_FIRE_COOLDOWN_MS = 2 * 30_000
ANTIBLAST_COOLDOWN_MS = 10 * 30_000
RECENT_INBOUND_MS = 15_000
MIN_INBOUND_DEFER_MS = 5_000
COLD_START_WINDOW_MS = 48 * 60 * 60 * 1000
PROVIDER_RISK_COOLDOWN_MS = 5 * 60_000
SESSION_DOWN_RETRY_MS = 5_000

BASE_DAILY_CAP = 120
MAX_DAILY_CAP = 600
ACCOUNT_WARMUP_DAYS = 10

_LINK_RE = re.compile(r"\bhttps?://|\bwww\.", re.IGNORECASE)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Admit:
    pass


@dataclass(frozen=True)
class Defer:
    delay_ms: int
    reason: str


@dataclass(frozen=True)
class Reject:
    code: str
    retry_in_ms: Optional[int] = None
    strikes: Optional[int] = None


Decision = Union[Admit, Defer, Reject]


def contains_link(text: Optional[str]) -> bool:
    return bool(_LINK_RE.search(text or ""))


def local_hour(now_ms: int, tz_offset_hours: int) -> int:
    utc_hour = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).hour
    return (utc_hour + tz_offset_hours) % 24


def within_business_hours(now_ms: int, tz_offset_hours: int = -5, start_hour: int = 8, end_hour: int = 21) -> bool:
    hour = local_hour(now_ms, tz_offset_hours)
    return start_hour <= hour <= end_hour


def dynamic_daily_cap(
    started_at: Optional[int],
    now_ms: int,
    base_cap: int = BASE_DAILY_CAP,
    max_cap: int = MAX_DAILY_CAP,
    warmup_days: int = ACCOUNT_WARMUP_DAYS,
) -> int:
    """Daily cap ramping linearly from ``base_cap`` to ``max_cap`` over the warm-up window."""
    started = started_at if started_at is not None else now_ms
    days = max(0, (now_ms - started) // DAY_MS)
    factor = min(1.0, days / warmup_days)
    return round(base_cap + (max_cap - base_cap) * factor)


class OutboundGovernor:
    def __init__(
        self,
        sessions: SessionService,
        cooldowns: CooldownLedger,
        pauses: PauseLedger,
        blast: BlastDetector,
        limiter: TokenBucketLimiter,
        activity: ContactActivity,
        daily: DailyCounters,
        *,
        tz_offset_hours: int = -5,
        business_start_hour: int = 8,
        business_end_hour: int = 21,
        clock: Callable[[], int] = _now_ms,
        rng: Optional[random.Random] = None,
    ):
        self.sessions = sessions
        self.cooldowns = cooldowns
        self.pauses = pauses
        self.blast = blast
        self.limiter = limiter
        self.activity = activity
        self.daily = daily
        self.tz_offset_hours = tz_offset_hours
        self.business_start_hour = business_start_hour
        self.business_end_hour = business_end_hour
        self._clock = clock
        self._rng = rng

    def evaluate(self, session_id: str, jid: str, text: str, now: Optional[int] = None) -> Decision:
        now = self._clock() if now is None else now
        decision = self._evaluate(session_id, jid, text, now)
        if not isinstance(decision, Admit):
            logger.info(
                "Outbound message not admitted",
                extra={"context": {"session_id": session_id, "jid": jid, "decision": decision}},
            )
        return decision

    def _evaluate(self, session_id: str, jid: str, text: str, now: int) -> Decision:
        if not within_business_hours(now, self.tz_offset_hours, self.business_start_hour, self.business_end_hour):
            return Reject("outside_business_hours")

        if self.pauses.is_paused(session_id, now):
            return Reject("session_paused", retry_in_ms=self.pauses.remaining_ms(session_id, now))

        record = self.sessions.get(session_id)
        if record is None or record.handle is None:
            return Reject("session_not_found_or_inactive")
        if not record.is_live:
            return Reject("session_not_active")

        if self.activity.is_opted_out(jid):
            return Reject("recipient_opted_out")

        if self.blast.looks_like_blast(session_id, text, now):
            result = self.cooldowns.set(session_key(session_id), ANTIBLAST_COOLDOWN_MS, "anti_blast", now)
            return Reject("anti_blast_triggered", retry_in_ms=result.duration_ms, strikes=result.strikes)

        if contains_link(text) and not self.activity.had_recent_inbound(session_id, jid, COLD_START_WINDOW_MS, now):
            return Reject("no_links_on_cold_start")

        contact = contact_key(session_id, jid)

        last_inbound = self.activity.last_inbound(session_id, jid)
        if last_inbound is not None and 0 <= now - last_inbound < RECENT_INBOUND_MS:
            remaining = max(CONTACT_COOLDOWN_BASE_MS - (now - last_inbound), MIN_INBOUND_DEFER_MS)
            self.cooldowns.set(contact, remaining, "recent_inbound", now)
            return Defer(remaining, "recent_inbound")

        status = self.cooldowns.check(contact, now)
        if status.cooling:
            return Defer(status.remaining_ms, status.reason or "contact_cooldown")

        last_sent = self.activity.last_sent(session_id, jid)
        if last_sent is not None and now - last_sent < RAPID_FIRE_WINDOW_MS:
            result = self.cooldowns.set(contact, RAPID_FIRE_COOLDOWN_MS, "rapid_fire_contact", now)
            return Defer(result.duration_ms, "rapid_fire_contact")

        if not self.limiter.try_consume_send(session_id, jid, now):
            return Reject("rate_limited")

        cap = dynamic_daily_cap(record.started_at, now)
        if not self.daily.try_increment(session_id, cap, now):
            return Reject("daily_cap_reached")

        return Admit()

    def recheck_queued(self, session_id: str, jid: str, now: Optional[int] = None) -> Optional[Defer]:
        """Checks that still apply to a job already sitting in the outbox."""
        now = self._clock() if now is None else now

        session_status = self.cooldowns.check(session_key(session_id), now)
        if session_status.cooling:
            return Defer(
                session_status.remaining_ms + jitter(250, 0.4, self._rng), session_status.reason or "session_cooldown"
            )

        contact_status = self.cooldowns.check(contact_key(session_id, jid), now)
        if contact_status.cooling:
            return Defer(
                contact_status.remaining_ms + jitter(250, 0.4, self._rng), contact_status.reason or "contact_cooldown"
            )

        if not self.sessions.is_live(session_id):
            return Defer(SESSION_DOWN_RETRY_MS, "session_not_active")

        return None

    def register_provider_risk(self, session_id: str, now: Optional[int] = None) -> int:
        """Escalate the session pause and set the provider-risk session cooldown."""
        now = self._clock() if now is None else now
        minutes = self.pauses.escalate(session_id, now)
        self.cooldowns.set(session_key(session_id), PROVIDER_RISK_COOLDOWN_MS, "provider_signal_risk", now)
        return minutes
