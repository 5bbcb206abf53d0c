import asyncio

import pytest
from conftest import ManualSleep, settle

from wa_gateway.services.scheduler import TaskScheduler


class TestTaskScheduler:
    @pytest.mark.asyncio
    async def test_runs_callback_after_delay(self):
        sleep = ManualSleep()
        scheduler = TaskScheduler(sleep)
        fired = []

        async def callback():
            fired.append("x")

        scheduler.schedule("k", 1500, callback)
        await settle()
        assert sleep.durations == [1.5]
        assert fired == []

        await sleep.release_all()
        assert fired == ["x"]
        assert scheduler.pending("k") is False

    @pytest.mark.asyncio
    async def test_rescheduling_same_key_cancels_previous(self):
        sleep = ManualSleep()
        scheduler = TaskScheduler(sleep)
        fired = []

        async def first():
            fired.append("first")

        async def second():
            fired.append("second")

        scheduler.schedule("k", 1000, first)
        await settle()
        scheduler.schedule("k", 2000, second)
        await settle()
        await sleep.release_all()

        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_cancel_prefix(self):
        sleep = ManualSleep()
        scheduler = TaskScheduler(sleep)
        fired = []

        async def callback():
            fired.append(True)

        scheduler.schedule("typing:a:early", 10, callback)
        scheduler.schedule("typing:a:late", 10, callback)
        scheduler.schedule("outbox:a", 10, callback)
        assert scheduler.cancel_prefix("typing:a:") == 2
        await settle()
        await sleep.release_all()

        assert fired == [True]
        assert scheduler.keys() == []

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self):
        scheduler = TaskScheduler(lambda s: asyncio.sleep(0))

        async def boom():
            raise RuntimeError("boom")

        handle = scheduler.schedule("k", 0, boom)
        await settle()
        assert handle.done is True
        assert handle.task.exception() is None

    @pytest.mark.asyncio
    async def test_callback_may_reschedule_its_own_key(self):
        sleep = ManualSleep()
        scheduler = TaskScheduler(sleep)
        ticks = []

        async def tick():
            ticks.append(len(ticks))
            if len(ticks) < 3:
                scheduler.schedule("watchdog", 5000, tick)

        scheduler.schedule("watchdog", 5000, tick)
        for _ in range(3):
            await settle()
            await sleep.release_all()

        assert ticks == [0, 1, 2]
        assert scheduler.pending("watchdog") is False
