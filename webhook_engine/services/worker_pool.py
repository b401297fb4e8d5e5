"""Bounded pool of asyncio workers draining a delivery job queue."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


class DeliveryWorkerPool:
    def __init__(self, worker_count: int) -> None:
        self._worker_count = worker_count
        self._queue: asyncio.Queue[tuple[Job, str]] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._run(n), name=f"delivery-worker-{n}")
            for n in range(self._worker_count)
        ]
        logger.info("Started %d delivery workers", self._worker_count)

    def submit(self, job: Job, label: str = "") -> None:
        self._queue.put_nowait((job, label))

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        await self._queue.join()

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Delivery workers stopped (%d jobs left queued)", self._queue.qsize())

    async def _run(self, n: int) -> None:
        while True:
            job, label = await self._queue.get()
            try:
                await job()
            except asyncio.CancelledError:
                self._queue.task_done()
                raise
            except Exception:
                logger.exception("Delivery worker %d: job %s failed", n, label)
            self._queue.task_done()
