"""Bounded worker pool for best-effort background work."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from taskloop.log import get_logger
from taskloop.services.base import Service

logger = get_logger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class BackgroundWorkDispatcher(Service):
    """Fixed number of worker coroutines draining a bounded queue.

    ``submit`` never waits: when the queue is full, or the dispatcher is not
    running, the task is dropped and a warning is logged. Delivery is
    at-most-once; failed tasks are logged and never retried.
    """

    def __init__(self, workers: int = 2, queue_size: int = 50, shutdown_timeout: float = 30.0):
        self._worker_count = workers
        self._shutdown_timeout = shutdown_timeout
        self._queue: asyncio.Queue[tuple[str, TaskFactory]] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._counters = {"submitted": 0, "completed": 0, "failed": 0, "dropped": 0}

    @property
    def service_name(self) -> str:
        return "background_dispatcher"

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"taskloop-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info("dispatcher_started", workers=self._worker_count, queue_size=self._queue.maxsize)

    def submit(self, name: str, factory: TaskFactory) -> bool:
        """Queue ``factory()`` for execution. Returns False when the task was dropped."""
        if not self._running:
            self._counters["dropped"] += 1
            logger.warning("background_task_dropped", task=name, reason="dispatcher_stopped")
            return False
        try:
            self._queue.put_nowait((name, factory))
        except asyncio.QueueFull:
            self._counters["dropped"] += 1
            logger.warning("background_task_dropped", task=name, reason="queue_full", queue_size=self._queue.maxsize)
            return False
        self._counters["submitted"] += 1
        return True

    async def join(self) -> None:
        """Wait until every queued task has finished."""
        await self._queue.join()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        try:
            await asyncio.wait_for(self._queue.join(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("dispatcher_drain_timeout", pending=self._queue.qsize())
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("dispatcher_stopped", **self._counters)

    async def health_check(self) -> bool:
        return self._running and all(not task.done() for task in self._workers)

    def stats(self) -> dict:
        return {**self._counters, "pending": self._queue.qsize()}

    async def _worker(self, index: int) -> None:
        while True:
            name, factory = await self._queue.get()
            try:
                await factory()
                self._counters["completed"] += 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._counters["failed"] += 1
                logger.error(
                    "background_task_failed",
                    task=name,
                    worker=index,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            finally:
                self._queue.task_done()
