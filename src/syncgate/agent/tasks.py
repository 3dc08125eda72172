from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger("syncgate.agent.tasks")


class PeriodicTask:
    """
    Runs `fn` every `interval_fn()` seconds, never overlapping with itself.

    The interval is re-read before every sleep so descriptor changes take effect on the
    next cycle. Stopping only prevents future runs; an invocation in progress completes.
    """

    def __init__(
        self,
        name: str,
        interval_fn: Callable[[], float],
        fn: Callable[[], Awaitable[None]],
        *,
        run_immediately: bool = False,
    ) -> None:
        self.name = name
        self.interval_fn = interval_fn
        self.fn = fn
        self.run_immediately = run_immediately
        self.runs = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _sleep(self) -> None:
        interval = max(0.01, float(self.interval_fn()))
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    async def _loop(self) -> None:
        if not self.run_immediately:
            await self._sleep()
        while not self._stop.is_set():
            try:
                await self.fn()
            except Exception:  # noqa: BLE001
                logger.exception("periodic_task_failed name=%s", self.name)
            self.runs += 1
            if self._stop.is_set():
                break
            await self._sleep()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"syncgate-{self.name}")

    async def close(self) -> None:
        self._stop.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None


class TaskManager:
    def __init__(self) -> None:
        self._tasks: list[PeriodicTask] = []

    def add(self, task: PeriodicTask) -> None:
        self._tasks.append(task)

    def count(self) -> int:
        return len(self._tasks)

    def names(self) -> list[str]:
        return [task.name for task in self._tasks]

    def start_all(self) -> None:
        for task in self._tasks:
            task.start()

    async def close_all(self) -> None:
        await asyncio.gather(*(task.close() for task in self._tasks))
