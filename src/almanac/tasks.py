"""Bounded background work queue.

Work that the caller does not wait for (stale-while-revalidate refreshes,
admin-triggered warming) is submitted here instead of being spawned as a bare
task. ``submit`` returns a future; callers that don't need the outcome simply
drop it, but failures are still logged and set on the handle.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

log = structlog.get_logger()


@dataclass
class _Job:
    name: str
    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class TaskRunner:
    def __init__(self, workers: int = 2, queue_size: int = 100) -> None:
        self._worker_count = workers
        self._queue: asyncio.Queue[_Job] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._work(i), name=f"almanac-worker-{i}")
            for i in range(self._worker_count)
        ]
        log.debug("task_runner_started", workers=self._worker_count)

    async def stop(self) -> None:
        """Cancel the workers. Jobs still queued are cancelled too."""
        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            with suppress(asyncio.CancelledError):
                await worker
        self._workers = []

        while not self._queue.empty():
            job = self._queue.get_nowait()
            job.future.cancel()
            self._queue.task_done()
        log.debug("task_runner_stopped")

    def submit(self, name: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """Queue ``factory`` for execution and return a handle to its result.

        Raises ``asyncio.QueueFull`` when the queue is at capacity.
        """
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Job(name=name, factory=factory, future=future))
        log.debug("task_submitted", task=name, pending=self._queue.qsize())
        return future

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def _work(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job.future.cancelled():
                    continue
                try:
                    result = await job.factory()
                except asyncio.CancelledError:
                    job.future.cancel()
                    raise
                except Exception as exc:
                    log.warning("task_failed", task=job.name, worker=index, exc_info=True)
                    if not job.future.cancelled():
                        job.future.set_exception(exc)
                        # Mark the exception retrieved; the log above already reports it.
                        job.future.exception()
                else:
                    if not job.future.cancelled():
                        job.future.set_result(result)
            finally:
                self._queue.task_done()
