"""Bounded asyncio worker pool used by the IPC listener."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger()


class WorkerPool:
    """A fixed set of worker tasks consuming a bounded queue.

    ``submit`` never waits: when the queue is full or the pool is not running
    the item is refused and the caller decides what to drop.
    """

    def __init__(
        self,
        job: Callable[[Any], Awaitable[None]],
        max_workers: int = 30,
        queue_size: int = 128,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.max_workers = max_workers
        self._job = job
        self._queue_size = queue_size
        self._queue: asyncio.Queue | None = None
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._active = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active(self) -> int:
        """Number of jobs currently executing."""
        return self._active

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    def start(self) -> None:
        """Spawn the workers. Must be called from inside a running event loop."""
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"ipc-worker-{i}")
            for i in range(self.max_workers)
        ]
        self._running = True

    def submit(self, item: Any) -> bool:
        if not self._running or self._queue is None:
            return False
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    async def stop(self, timeout: float | None = None) -> list[Any]:
        """Stop accepting work, wait for queued jobs, then cancel the workers.

        Jobs still running after ``timeout`` are cancelled. Items that never
        reached a worker are returned so the caller can release them.
        """
        if not self._running or self._queue is None:
            return []
        self._running = False
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Worker pool did not drain in time",
                active=self._active,
                pending=self._queue.qsize(),
            )

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        leftover = []
        while not self._queue.empty():
            leftover.append(self._queue.get_nowait())
            self._queue.task_done()
        return leftover

    async def _worker(self, index: int) -> None:
        while True:
            item = await self._queue.get()
            self._active += 1
            try:
                await self._job(item)
            except Exception:
                logger.exception("Worker job failed", worker=index)
            finally:
                self._active -= 1
                self._queue.task_done()
