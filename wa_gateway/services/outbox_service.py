"""Per-recipient FIFO outbox of deferred sends.

Only the head job of a ``(session, recipient)`` queue is ever dispatched.
One retry timer exists per queue; a timer that fires for a job which is no
longer at the head is a no-op.
"""

import itertools
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from wa_gateway.logging_config import get_logger
from wa_gateway.services.alert_service import AlertService
from wa_gateway.services.backoff import jitter
from wa_gateway.services.governor import RAPID_FIRE_WINDOW_MS, OutboundGovernor
from wa_gateway.services.presence_service import PresenceSimulator
from wa_gateway.services.scheduler import TaskScheduler

if TYPE_CHECKING:
    from wa_gateway.services.delivery_service import DeliveryExecutor

logger = get_logger("outbox_service")

IN_FLIGHT_RETRY_MS = 1_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def outbox_key(session_id: str, jid: str) -> str:
    return f"{session_id}:{jid}"


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


@dataclass
class OutboxJob:
    id: str
    session_id: str
    jid: str
    text: str
    created_at: int
    attempts: int = 0
    failures: int = 0

    @property
    def key(self) -> str:
        return outbox_key(self.session_id, self.jid)


@dataclass
class DeadLetter:
    job: OutboxJob
    reason: str
    dead_at: int
    last_error: Optional[str] = None


@dataclass
class OutboxQueue:
    jobs: list[OutboxJob] = field(default_factory=list)

    @property
    def head(self) -> Optional[OutboxJob]:
        return self.jobs[0] if self.jobs else None


class OutboxScheduler:
    def __init__(
        self,
        governor: OutboundGovernor,
        presence: PresenceSimulator,
        scheduler: TaskScheduler,
        *,
        max_send_failures: int = 5,
        alerts: Optional[AlertService] = None,
        clock: Callable[[], int] = _now_ms,
        rng: Optional[random.Random] = None,
    ):
        self.governor = governor
        self.presence = presence
        self.scheduler = scheduler
        self.max_send_failures = max_send_failures
        self.alerts = alerts
        self.executor: Optional["DeliveryExecutor"] = None
        self._clock = clock
        self._rng = rng
        self._queues: dict[str, OutboxQueue] = {}
        self._in_flight: set[str] = set()
        self._seq = itertools.count(1)
        self.dead_letters: list[DeadLetter] = []

    # Queue operations

    def enqueue(self, session_id: str, jid: str, text: str) -> OutboxJob:
        key = outbox_key(session_id, jid)
        queue = self._queues.setdefault(key, OutboxQueue())
        job = OutboxJob(
            id=f"job_{next(self._seq)}",
            session_id=session_id,
            jid=jid,
            text=text,
            created_at=self._clock(),
        )
        queue.jobs.append(job)
        logger.info(
            f"Queued {job.id} for {jid}",
            extra={"context": {"session_id": session_id, "queue_length": len(queue.jobs)}},
        )
        return job

    def peek(self, session_id: str, jid: str) -> Optional[OutboxJob]:
        queue = self._queues.get(outbox_key(session_id, jid))
        return queue.head if queue else None

    def is_head(self, job: OutboxJob) -> bool:
        head = self.peek(job.session_id, job.jid)
        return head is not None and head.id == job.id

    def has_pending(self, session_id: str, jid: str) -> bool:
        return self.peek(session_id, jid) is not None

    def dequeue(self, job: OutboxJob) -> bool:
        queue = self._queues.get(job.key)
        if queue is None:
            return False
        before = len(queue.jobs)
        queue.jobs = [j for j in queue.jobs if j.id != job.id]
        if not queue.jobs:
            del self._queues[job.key]
        return len(queue.jobs) < before

    # Scheduling

    @staticmethod
    def _timer_key(job: OutboxJob) -> str:
        return f"outbox:{job.key}"

    def schedule_retry(self, job: OutboxJob, delay_ms: int) -> None:
        delay_ms = max(0, int(delay_ms))
        self.presence.schedule_bursts(job.session_id, job.jid, delay_ms)
        self.scheduler.schedule(self._timer_key(job), delay_ms, lambda: self._fire(job))
        logger.debug(f"Retry for {job.id} in {delay_ms}ms")

    async def _fire(self, job: OutboxJob) -> None:
        if not self.is_head(job):
            return
        if job.key in self._in_flight:
            self.scheduler.schedule(self._timer_key(job), IN_FLIGHT_RETRY_MS, lambda: self._fire(job))
            return
        await self.attempt_send(job)

    async def attempt_send(self, job: OutboxJob) -> None:
        job.attempts += 1
        blocked = self.governor.recheck_queued(job.session_id, job.jid)
        if blocked is not None:
            logger.info(
                f"{job.id} still blocked; rescheduling",
                extra={"context": {"reason": blocked.reason, "delay_ms": blocked.delay_ms, "attempts": job.attempts}},
            )
            self.schedule_retry(job, blocked.delay_ms)
            return

        if self.executor is None:
            raise RuntimeError("Outbox has no delivery executor attached")

        self._in_flight.add(job.key)
        try:
            await self.executor.send(job.session_id, job.jid, job.text, job=job)
        except Exception as e:
            logger.info(f"{job.id} delivery failed: {e}")
        finally:
            self._in_flight.discard(job.key)

    def complete(self, job: OutboxJob) -> None:
        """Remove a delivered job and arm the next one for the same recipient."""
        self.dequeue(job)
        self.scheduler.cancel(self._timer_key(job))
        self._kick_next(job.session_id, job.jid)

    def _kick_next(self, session_id: str, jid: str) -> None:
        nxt = self.peek(session_id, jid)
        if nxt is not None:
            self.schedule_retry(nxt, RAPID_FIRE_WINDOW_MS + jitter(300, 0.5, self._rng))

    def record_failure(self, job: OutboxJob, retry_delay_ms: int, error: Optional[str] = None) -> None:
        job.failures += 1
        if self.max_send_failures and job.failures >= self.max_send_failures:
            self._dead_letter(job, "max_send_failures", error)
            return
        self.schedule_retry(job, retry_delay_ms)

    def _dead_letter(self, job: OutboxJob, reason: str, error: Optional[str] = None) -> None:
        self.dequeue(job)
        self.scheduler.cancel(self._timer_key(job))
        self.dead_letters.append(DeadLetter(job=job, reason=reason, dead_at=self._clock(), last_error=error))
        logger.warning(
            f"{job.id} dead-lettered",
            extra={"context": {"session_id": job.session_id, "jid": job.jid, "reason": reason, "failures": job.failures}},
        )
        if self.alerts is not None:
            self.alerts.notify(
                "WARNING",
                "Outbox job dead-lettered",
                {"job_id": job.id, "session_id": job.session_id, "jid": job.jid, "reason": reason},
            )
        self._kick_next(job.session_id, job.jid)

    def drop_session(self, session_id: str) -> int:
        """Cancel timers and dead-letter every queued job of a stopped session."""
        dropped = 0
        for key in [k for k, q in self._queues.items() if q.head and q.head.session_id == session_id]:
            queue = self._queues.pop(key)
            for job in queue.jobs:
                self.scheduler.cancel(self._timer_key(job))
                self.presence.clear_bursts(job.session_id, job.jid)
                self.dead_letters.append(DeadLetter(job=job, reason="session_stopped", dead_at=self._clock()))
                dropped += 1
        return dropped

    # Introspection

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "key": key,
                "size": len(queue.jobs),
                "jobs": [
                    {"id": job.id, "createdAt": _iso(job.created_at), "attempts": job.attempts} for job in queue.jobs
                ],
            }
            for key, queue in self._queues.items()
        ]

    def dead_letter_snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "id": dl.job.id,
                "sessionId": dl.job.session_id,
                "jid": dl.job.jid,
                "attempts": dl.job.attempts,
                "failures": dl.job.failures,
                "reason": dl.reason,
                "lastError": dl.last_error,
                "deadAt": _iso(dl.dead_at),
            }
            for dl in self.dead_letters
        ]
