"""Cancellable delayed tasks on the running event loop.

Each task is registered under a key; scheduling a new task under an existing
key cancels the previous one, so a superseded timer never fires.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from wa_gateway.logging_config import get_logger

logger = get_logger("scheduler")

SleepFunc = Callable[[float], Awaitable[None]]


class ScheduledTask:
    def __init__(self, key: str, delay_ms: int):
        self.key = key
        self.delay_ms = delay_ms
        self.task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()


class TaskScheduler:
    def __init__(self, sleep_func: SleepFunc = asyncio.sleep):
        self._sleep = sleep_func
        self._tasks: dict[str, ScheduledTask] = {}

    def schedule(self, key: str, delay_ms: int, callback: Callable[[], Awaitable[None]]) -> ScheduledTask:
        self.cancel(key)
        handle = ScheduledTask(key, max(0, int(delay_ms)))
        handle.task = asyncio.create_task(self._run(handle, callback))
        self._tasks[key] = handle
        return handle

    async def _run(self, handle: ScheduledTask, callback: Callable[[], Awaitable[None]]) -> None:
        try:
            await self._sleep(handle.delay_ms / 1000)
        except asyncio.CancelledError:
            return
        if self._tasks.get(handle.key) is handle:
            del self._tasks[handle.key]
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled task failed", extra={"context": {"key": handle.key}})

    def cancel(self, key: str) -> bool:
        handle = self._tasks.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_prefix(self, prefix: str) -> int:
        keys = [key for key in self._tasks if key.startswith(prefix)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def get(self, key: str) -> Optional[ScheduledTask]:
        return self._tasks.get(key)

    def pending(self, key: str) -> bool:
        handle = self._tasks.get(key)
        return handle is not None and not handle.done

    def keys(self) -> list[str]:
        return list(self._tasks)

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)
