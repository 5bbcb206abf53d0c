import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

BLAST_WINDOW_MS = 10 * 60_000
BLAST_RECIPIENT_THRESHOLD = 8


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_text(text: Optional[str]) -> str:
    return (text or "").strip()


@dataclass(frozen=True)
class BroadcastRecord:
    timestamp: int
    session_id: str
    normalized_text: str
    recipient_id: str


class BlastDetector:
    """Detects identical text fanned out to many recipients from one session."""

    def __init__(
        self,
        clock: Callable[[], int] = _now_ms,
        window_ms: int = BLAST_WINDOW_MS,
        threshold: int = BLAST_RECIPIENT_THRESHOLD,
    ):
        self._clock = clock
        self.window_ms = window_ms
        self.threshold = threshold
        self._log: deque[BroadcastRecord] = deque()

    def _prune(self, now: int) -> None:
        while self._log and now - self._log[0].timestamp > self.window_ms:
            self._log.popleft()

    def register(self, session_id: str, text: str, recipient_id: str, now: Optional[int] = None) -> None:
        now = self._clock() if now is None else now
        self._log.append(BroadcastRecord(now, session_id, normalize_text(text), recipient_id))
        self._prune(now)

    def distinct_recipients(self, session_id: str, text: str, now: Optional[int] = None) -> int:
        now = self._clock() if now is None else now
        self._prune(now)
        norm = normalize_text(text)
        return len(
            {
                record.recipient_id
                for record in self._log
                if record.session_id == session_id and record.normalized_text == norm
            }
        )

    def looks_like_blast(self, session_id: str, text: str, now: Optional[int] = None) -> bool:
        if not normalize_text(text):
            return False
        return self.distinct_recipients(session_id, text, now) >= self.threshold

    def __len__(self) -> int:
        return len(self._log)
