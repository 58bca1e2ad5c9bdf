"""Supervised background tasks: fire-and-forget jobs and periodic timers."""

import asyncio
import logging
from typing import Awaitable, Callable

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """Owns every background task the app starts.

    Exceptions raised by a task are logged here and go no further; a failed
    auto-settlement never reaches the request that triggered it.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone="UTC",
        )
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Awaitable, name: str = "task") -> asyncio.Task | None:
        if self._closed:
            logger.warning("Supervisor closed, dropping task %s", name)
            if asyncio.iscoroutine(coro):
                coro.close()
            return None
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable, name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background task %s failed", name)

    def every(self, interval: float, func: Callable[[], Awaitable], name: str) -> Job:
        """Schedule ``func`` every ``interval`` seconds; runs once ``start`` is called."""
        if self.scheduler.get_job(name) is not None:
            raise ValueError(f"Timer {name!r} already registered")
        job = self.scheduler.add_job(
            self._run_timer,
            trigger=IntervalTrigger(seconds=interval),
            args=[func, name],
            id=name,
            name=name,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Timer %s scheduled (interval: %gs)", name, interval)
        return job

    async def _run_timer(self, func: Callable[[], Awaitable], name: str) -> None:
        try:
            await func()
        except Exception:
            logger.exception("Timer %s failed", name)

    def start(self) -> None:
        """Start the timer scheduler on the running event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Timers started (%d job(s))", len(self.scheduler.get_jobs()))

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for submitted tasks, including any they submit in turn."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, _ = await asyncio.wait(set(self._tasks), timeout=remaining)
            if not done and remaining == 0:
                logger.warning("Drain timed out with %d task(s) pending", len(self._tasks))
                return

    async def shutdown(self, timeout: float = 10.0) -> None:
        self._closed = True
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        await self.drain(timeout)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Background tasks stopped")
