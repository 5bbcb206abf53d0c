"""Token-bucket rate limiting keyed by arbitrary strings."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

SESSION_BUCKET_CAPACITY = 6
SESSION_BUCKET_REFILL_PER_SECOND = 1.0
RECIPIENT_BUCKET_CAPACITY = 3
RECIPIENT_BUCKET_REFILL_PER_SECOND = 0.25


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TokenBucket:
    key: str
    tokens: float
    last_refill_at: int
    capacity: float
    refill_rate_per_second: float

    def refill(self, now: int) -> None:
        elapsed = max(0, now - self.last_refill_at) / 1000
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_second)
        self.last_refill_at = max(self.last_refill_at, now)


def session_bucket_key(session_id: str) -> str:
    return f"s:{session_id}"


def recipient_bucket_key(session_id: str, jid: str) -> str:
    return f"j:{session_id}:{jid}"


class TokenBucketLimiter:
    """Holds one bucket per key; tokens stay within [0, capacity]."""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}

    def _bucket(self, key: str, capacity: float, refill_per_second: float, now: int) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(
                key=key,
                tokens=capacity,
                last_refill_at=now,
                capacity=capacity,
                refill_rate_per_second=refill_per_second,
            )
            self._buckets[key] = bucket
        bucket.refill(now)
        return bucket

    def try_consume(
        self,
        key: str,
        capacity: float,
        refill_per_second: float,
        now: Optional[int] = None,
    ) -> bool:
        now = self._clock() if now is None else now
        bucket = self._bucket(key, capacity, refill_per_second, now)
        if bucket.tokens < 1:
            return False
        bucket.tokens -= 1
        return True

    def available(self, key: str, capacity: float, refill_per_second: float, now: Optional[int] = None) -> float:
        now = self._clock() if now is None else now
        return self._bucket(key, capacity, refill_per_second, now).tokens

    def try_consume_send(self, session_id: str, jid: str, now: Optional[int] = None) -> bool:
        """Take one unit from both the session and the recipient bucket, or from neither."""
        now = self._clock() if now is None else now
        session_bucket = self._bucket(
            session_bucket_key(session_id), SESSION_BUCKET_CAPACITY, SESSION_BUCKET_REFILL_PER_SECOND, now
        )
        recipient_bucket = self._bucket(
            recipient_bucket_key(session_id, jid), RECIPIENT_BUCKET_CAPACITY, RECIPIENT_BUCKET_REFILL_PER_SECOND, now
        )
        if session_bucket.tokens < 1 or recipient_bucket.tokens < 1:
            return False
        session_bucket.tokens -= 1
        recipient_bucket.tokens -= 1
        return True

    def get(self, key: str) -> Optional[TokenBucket]:
        return self._buckets.get(key)
