"""Per-contact activity: last inbound, last outbound, opt-outs and daily volume."""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

OPT_OUT_KEYWORDS = frozenset({"stop", "salir", "baja", "no molestar"})


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_opt_out_message(text: Optional[str]) -> bool:
    return (text or "").strip().lower() in OPT_OUT_KEYWORDS


def _pair(session_id: str, jid: str) -> str:
    return f"{session_id}:{jid}"


class ContactActivity:
    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._last_inbound: dict[str, int] = {}
        self._last_sent: dict[str, int] = {}
        self._opted_out: set[str] = set()

    def record_inbound(self, session_id: str, jid: str, now: Optional[int] = None) -> None:
        self._last_inbound[_pair(session_id, jid)] = self._clock() if now is None else now

    def last_inbound(self, session_id: str, jid: str) -> Optional[int]:
        return self._last_inbound.get(_pair(session_id, jid))

    def had_recent_inbound(self, session_id: str, jid: str, window_ms: int, now: Optional[int] = None) -> bool:
        now = self._clock() if now is None else now
        last = self.last_inbound(session_id, jid)
        return last is not None and now - last <= window_ms

    def record_sent(self, session_id: str, jid: str, now: Optional[int] = None) -> None:
        self._last_sent[_pair(session_id, jid)] = self._clock() if now is None else now

    def last_sent(self, session_id: str, jid: str) -> Optional[int]:
        return self._last_sent.get(_pair(session_id, jid))

    def opt_out(self, jid: str) -> None:
        self._opted_out.add(jid)

    def is_opted_out(self, jid: str) -> bool:
        return jid in self._opted_out


@dataclass
class DailyCounter:
    date_key: str
    count: int = 0


def date_key(now_ms: int) -> str:
    return datetime.fromtimestamp(now_ms / 1000).date().isoformat()


class DailyCounters:
    """Sends per session per local calendar day."""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._counters: dict[str, DailyCounter] = {}

    def _current(self, session_id: str, now: int) -> DailyCounter:
        key = date_key(now)
        counter = self._counters.get(session_id)
        if counter is None or counter.date_key != key:
            counter = DailyCounter(date_key=key)
            self._counters[session_id] = counter
        return counter

    def count(self, session_id: str, now: Optional[int] = None) -> int:
        return self._current(session_id, self._clock() if now is None else now).count

    def try_increment(self, session_id: str, limit: int, now: Optional[int] = None) -> bool:
        counter = self._current(session_id, self._clock() if now is None else now)
        if counter.count >= limit:
            return False
        counter.count += 1
        return True
