"""
Side Effect Queue - best-effort work that follows a successful send.

Activity log entries, the SMS conversation log and message embeddings are
queued here after the message is already ``sent``. Workers drain the queue
in the background; a failing job is logged and dropped. Nothing in this
module can reach a ScheduledMessage's status.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

SideEffectJob = Callable[[], Awaitable[None]]


class SideEffectQueue:
    """
    asyncio.Queue of zero-argument coroutine factories drained by N workers.

    Example:
        queue = SideEffectQueue(workers=2)
        await queue.start()
        queue.submit("activity", lambda: repository.append_activity(record))
        await queue.drain()   # wait for everything submitted so far
        await queue.stop()
    """

    def __init__(self, workers: int = 2, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._worker_count = max(1, workers)
        self._workers: list[asyncio.Task] = []
        self.stats = {"completed": 0, "failed": 0, "dropped": 0}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self._worker_count)
        ]
        logger.debug(f"SideEffectQueue started with {self._worker_count} worker(s)")

    def submit(self, label: str, job: SideEffectJob) -> bool:
        """Enqueue a job without waiting. Returns False if the queue is full."""
        try:
            self._queue.put_nowait((label, job))
            return True
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            logger.warning(f"Side effect queue full, dropped job: {label}")
            return False

    async def _run(self, label: str, job: SideEffectJob) -> None:
        try:
            await job()
            self.stats["completed"] += 1
        except Exception as e:
            self.stats["failed"] += 1
            logger.error(f"Side effect '{label}' failed: {e}")

    async def _worker(self, index: int) -> None:
        while True:
            label, job = await self._queue.get()
            try:
                await self._run(label, job)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """
        Wait until every submitted job has finished.

        Without running workers (one-shot CLI passes) the jobs are run inline.
        """
        if not self._workers:
            while not self._queue.empty():
                label, job = self._queue.get_nowait()
                await self._run(label, job)
                self._queue.task_done()
            return
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        if drain:
            await self.drain()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

    def pending(self) -> int:
        return self._queue.qsize()
