"""Escalating cooldowns and session pauses."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from wa_gateway.logging_config import get_logger

logger = get_logger("cooldown_service")

MAX_COOLDOWN_MS = 60 * 60 * 1000
STRIKE_MULTIPLIERS = (1, 2, 3, 4)
PAUSE_STEPS_MINUTES = (1, 5, 15, 60)


def _now_ms() -> int:
    return int(time.time() * 1000)


def session_key(session_id: str) -> str:
    return f"cd:session:{session_id}"


def contact_key(session_id: str, jid: str) -> str:
    return f"cd:contact:{session_id}:{jid}"


def escalated_duration(base_ms: int, strikes: int) -> int:
    multiplier = STRIKE_MULTIPLIERS[min(max(strikes, 1) - 1, len(STRIKE_MULTIPLIERS) - 1)]
    return min(base_ms * multiplier, MAX_COOLDOWN_MS)


@dataclass
class CooldownEntry:
    key: str
    active_until: int
    reason: str
    strike_count: int
    last_set_at: int


@dataclass
class CooldownStatus:
    cooling: bool
    remaining_ms: int = 0
    reason: Optional[str] = None
    strikes: int = 0


@dataclass
class CooldownSet:
    strikes: int
    duration_ms: int


class CooldownLedger:
    """Cooldown entries keyed by ``cd:<scope>:...`` strings.

    An expired entry is logically absent: it is dropped the next time it is
    checked, so a later trigger starts again from one strike.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._entries: dict[str, CooldownEntry] = {}

    def check(self, key: str, now: Optional[int] = None) -> CooldownStatus:
        now = self._clock() if now is None else now
        entry = self._entries.get(key)
        if entry is None:
            return CooldownStatus(cooling=False)
        remaining = entry.active_until - now
        if remaining <= 0:
            del self._entries[key]
            return CooldownStatus(cooling=False)
        return CooldownStatus(cooling=True, remaining_ms=remaining, reason=entry.reason, strikes=entry.strike_count)

    def set(self, key: str, base_ms: int, reason: str = "cooldown", now: Optional[int] = None) -> CooldownSet:
        now = self._clock() if now is None else now
        previous = self._entries.get(key)
        if previous is not None and previous.active_until <= now:
            previous = None
        strikes = (previous.strike_count if previous else 0) + 1
        duration = escalated_duration(base_ms, strikes)
        self._entries[key] = CooldownEntry(
            key=key,
            active_until=now + duration,
            reason=reason,
            strike_count=strikes,
            last_set_at=now,
        )
        logger.info(
            "Cooldown set",
            extra={"context": {"key": key, "reason": reason, "strikes": strikes, "duration_ms": duration}},
        )
        return CooldownSet(strikes=strikes, duration_ms=duration)

    def clear(self, key: str) -> None:
        self._entries.pop(key, None)

    def active(self, now: Optional[int] = None) -> list[CooldownEntry]:
        now = self._clock() if now is None else now
        return [entry for entry in self._entries.values() if entry.active_until > now]


class PauseLedger:
    """Session-wide pause windows escalating through 1, 5, 15 and 60 minutes."""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._paused_until: dict[str, int] = {}
        self._strikes: dict[str, int] = {}

    def is_paused(self, session_id: str, now: Optional[int] = None) -> bool:
        now = self._clock() if now is None else now
        return now < self._paused_until.get(session_id, 0)

    def remaining_ms(self, session_id: str, now: Optional[int] = None) -> int:
        now = self._clock() if now is None else now
        return max(0, self._paused_until.get(session_id, 0) - now)

    def pause(self, session_id: str, duration_ms: int, now: Optional[int] = None) -> None:
        now = self._clock() if now is None else now
        self._paused_until[session_id] = now + duration_ms

    def escalate(self, session_id: str, now: Optional[int] = None) -> int:
        strikes = self._strikes.get(session_id, 0) + 1
        self._strikes[session_id] = strikes
        minutes = PAUSE_STEPS_MINUTES[min(strikes - 1, len(PAUSE_STEPS_MINUTES) - 1)]
        self.pause(session_id, minutes * 60_000, now)
        logger.warning(
            "Session pause escalated",
            extra={"context": {"session_id": session_id, "minutes": minutes, "strikes": strikes}},
        )
        return minutes
