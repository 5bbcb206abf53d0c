import asyncio

import pytest
from conftest import open_session, settle

from wa_gateway.services.cooldown_service import contact_key
from wa_gateway.services.outbox_service import IN_FLIGHT_RETRY_MS
from wa_gateway.transport.base import TransportError

JID = "15551234567@s.whatsapp.net"


async def _drain(manual_sleep, gateway, rounds=10):
    for _ in range(rounds):
        if not gateway.outbox.has_pending("acct1", JID):
            return
        await manual_sleep.release_all()


class TestQueue:
    def test_enqueue_is_fifo(self, build):
        gateway = build()
        jobs = [gateway.outbox.enqueue("acct1", JID, f"m{i}") for i in range(3)]

        assert gateway.outbox.peek("acct1", JID) is jobs[0]
        assert gateway.outbox.is_head(jobs[1]) is False
        assert [j.id for j in jobs] == ["job_1", "job_2", "job_3"]

    def test_dequeue_removes_empty_queue(self, build):
        gateway = build()
        job = gateway.outbox.enqueue("acct1", JID, "hi")

        assert gateway.outbox.dequeue(job) is True
        assert gateway.outbox.has_pending("acct1", JID) is False
        assert gateway.outbox.dequeue(job) is False

    def test_snapshot(self, build):
        gateway = build()
        gateway.outbox.enqueue("acct1", JID, "hi")

        snapshot = gateway.outbox.snapshot()

        assert snapshot[0]["key"] == f"acct1:{JID}"
        assert snapshot[0]["size"] == 1
        assert snapshot[0]["jobs"][0]["id"] == "job_1"
        assert snapshot[0]["jobs"][0]["attempts"] == 0
        assert snapshot[0]["jobs"][0]["createdAt"].startswith("2024-01-15T15:00:00")


class TestRetries:
    @pytest.mark.asyncio
    async def test_jobs_dispatch_in_order(self, build, transport, manual_sleep):
        gateway = build()
        handle = await open_session(gateway, transport)
        jobs = [gateway.outbox.enqueue("acct1", JID, f"m{i}") for i in range(3)]
        gateway.outbox.schedule_retry(jobs[0], 1_000)

        await _drain(manual_sleep, gateway)

        assert [content["text"] for _, content in handle.sent] == ["m0", "m1", "m2"]
        gateway.scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_next_job_waits_rapid_fire_window(self, build, transport, manual_sleep):
        gateway = build()
        await open_session(gateway, transport)
        first = gateway.outbox.enqueue("acct1", JID, "m0")
        gateway.outbox.enqueue("acct1", JID, "m1")
        gateway.outbox.schedule_retry(first, 0)

        await manual_sleep.release_all()

        delay = gateway.scheduler.get(f"outbox:acct1:{JID}").delay_ms
        assert 15_000 + 150 <= delay <= 15_000 + 450
        gateway.scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_timer_for_non_head_job_is_noop(self, build, transport, manual_sleep):
        gateway = build()
        handle = await open_session(gateway, transport)
        gateway.outbox.enqueue("acct1", JID, "m0")
        second = gateway.outbox.enqueue("acct1", JID, "m1")
        gateway.outbox.schedule_retry(second, 0)

        await manual_sleep.release_all()

        assert handle.sent == []
        assert second.attempts == 0
        assert len(gateway.outbox.snapshot()[0]["jobs"]) == 2
        gateway.scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_blocked_job_is_rescheduled(self, build, transport, manual_sleep, clock):
        gateway = build()
        handle = await open_session(gateway, transport)
        gateway.cooldowns.set(contact_key("acct1", JID), 60_000, "rapid_fire_contact")
        job = gateway.outbox.enqueue("acct1", JID, "m0")
        gateway.outbox.schedule_retry(job, 0)

        await manual_sleep.release_all()

        assert handle.sent == []
        assert job.attempts == 1
        assert job.failures == 0
        assert gateway.scheduler.get(f"outbox:acct1:{JID}").delay_ms >= 60_000
        gateway.scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_typing_bursts_armed_before_retry(self, build, transport):
        gateway = build()
        await open_session(gateway, transport)
        job = gateway.outbox.enqueue("acct1", JID, "m0")

        gateway.outbox.schedule_retry(job, 20_000)

        keys = gateway.scheduler.keys()
        assert f"typing:acct1:{JID}:early" in keys
        assert f"typing:acct1:{JID}:late" in keys
        assert gateway.scheduler.get(f"typing:acct1:{JID}:early").delay_ms == 13_000
        gateway.scheduler.cancel_all()


class TestInFlight:
    @pytest.mark.asyncio
    async def test_timer_during_send_is_rearmed(self, build, transport, manual_sleep):
        gateway = build()
        handle = await open_session(gateway, transport)
        job = gateway.outbox.enqueue("acct1", JID, "m0")
        gateway.outbox._in_flight.add(job.key)
        gateway.outbox.schedule_retry(job, 0)

        await manual_sleep.release_all()

        assert handle.sent == []
        assert job.attempts == 0
        assert gateway.scheduler.get(f"outbox:acct1:{JID}").delay_ms == IN_FLIGHT_RETRY_MS

        gateway.outbox._in_flight.discard(job.key)
        await manual_sleep.release_all()

        assert [content["text"] for _, content in handle.sent] == ["m0"]
        gateway.scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_overlapping_timers_dispatch_once(self, build, transport):
        gateway = build()
        handle = await open_session(gateway, transport)
        job = gateway.outbox.enqueue("acct1", JID, "m0")

        await asyncio.gather(gateway.outbox._fire(job), gateway.outbox._fire(job))

        assert len(handle.sent) == 1
        assert job.attempts == 1
        assert gateway.outbox.has_pending("acct1", JID) is False
        gateway.scheduler.cancel_all()


class TestFailures:
    @pytest.mark.asyncio
    async def test_send_failure_reschedules_with_cooldown(self, build, transport, manual_sleep):
        gateway = build()
        handle = await open_session(gateway, transport)
        handle.send_error = TransportError("timed out")
        job = gateway.outbox.enqueue("acct1", JID, "m0")
        gateway.outbox.schedule_retry(job, 0)

        await manual_sleep.release_all()

        assert job.failures == 1
        assert gateway.outbox.is_head(job) is True
        status = gateway.cooldowns.check(contact_key("acct1", JID))
        assert status.reason == "retry_after_error"
        assert gateway.scheduler.get(f"outbox:acct1:{JID}").delay_ms >= 60_000
        gateway.scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_failures(self, build, transport, manual_sleep, clock):
        gateway = build(outbox_max_send_failures=2)
        handle = await open_session(gateway, transport)
        handle.send_error = TransportError("timed out")
        first = gateway.outbox.enqueue("acct1", JID, "m0")
        gateway.outbox.enqueue("acct1", JID, "m1")
        gateway.outbox.schedule_retry(first, 0)

        await manual_sleep.release_all()
        clock.advance(130_000)
        await manual_sleep.release_all()

        assert gateway.outbox.dead_letters[0].job is first
        assert gateway.outbox.dead_letters[0].reason == "max_send_failures"
        assert gateway.outbox.peek("acct1", JID).text == "m1"
        assert gateway.outbox.dead_letter_snapshot()[0]["lastError"] == "timed out"
        gateway.scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_drop_session_dead_letters_queue(self, build, transport):
        gateway = build()
        await open_session(gateway, transport)
        job = gateway.outbox.enqueue("acct1", JID, "m0")
        gateway.outbox.enqueue("acct2", JID, "other")
        gateway.outbox.schedule_retry(job, 5_000)

        assert gateway.outbox.drop_session("acct1") == 1

        assert gateway.outbox.has_pending("acct1", JID) is False
        assert gateway.outbox.has_pending("acct2", JID) is True
        assert not any(key.startswith("outbox:acct1") or key.startswith("typing:acct1") for key in gateway.scheduler.keys())
        assert gateway.outbox.dead_letters[0].reason == "session_stopped"
        await settle()
        gateway.scheduler.cancel_all()
