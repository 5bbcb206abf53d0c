"""Reconnect backoff and jitter helpers."""

import random
from typing import Optional

BASE_DELAY_MS = 1000
MAX_DELAY_MS = 60_000
MAX_ATTEMPTS = 8
JITTER_SPREAD = 0.5


def jitter(ms: float, spread: float = 0.4, rng: Optional[random.Random] = None) -> int:
    """Return ``ms`` moved by a uniform random amount within ``±ms * spread``."""
    rng = rng or random
    delta = ms * spread
    return int(ms + int((rng.random() * 2 - 1) * delta))


def base_delay_ms(attempt: int) -> int:
    attempt = min(max(attempt, 1), MAX_ATTEMPTS)
    return min(BASE_DELAY_MS * 2 ** (attempt - 1), MAX_DELAY_MS)


class ReconnectBackoff:
    """Per-session attempt counters, capped at ``MAX_ATTEMPTS``."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng
        self._attempts: dict[str, int] = {}

    def attempts(self, session_id: str) -> int:
        return self._attempts.get(session_id, 0)

    def next_delay(self, session_id: str) -> int:
        attempt = min(self._attempts.get(session_id, 0) + 1, MAX_ATTEMPTS)
        self._attempts[session_id] = attempt
        return jitter(base_delay_ms(attempt), JITTER_SPREAD, self._rng)

    def reset(self, session_id: str) -> None:
        self._attempts.pop(session_id, None)
