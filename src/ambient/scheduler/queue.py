"""Deferred work queue.

Handlers submit maintenance jobs after the reply is on the wire; a single
worker drains them in FIFO order. Failures are logged, never surfaced to
the request that caused them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[object] | object]


@dataclass
class Job:
    name: str
    fn: JobFn


class WorkQueue:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Job | None] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="ambient-work-queue")

    def submit(self, job: Job) -> None:
        """Enqueue without waiting. Starts the worker lazily."""
        self._queue.put_nowait(job)
        self.start()

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await self._execute(job)
            finally:
                self._queue.task_done()

    async def _execute(self, job: Job) -> None:
        try:
            result = job.fn()
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                await result
            self.completed += 1
        except Exception as e:
            self.failed += 1
            logger.warning("Background job %s failed: %s", job.name, e, exc_info=True)

    async def drain(self) -> None:
        """Wait for every submitted job, then stop the worker."""
        if self._worker is None or self._worker.done():
            # Nothing running; execute leftovers inline
            while not self._queue.empty():
                job = self._queue.get_nowait()
                self._queue.task_done()
                if job is not None:
                    await self._execute(job)
            return
        await self._queue.join()
        self._queue.put_nowait(None)
        await self._worker
        self._worker = None
