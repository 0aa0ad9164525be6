import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from finance_categorizer.logger import get_logger

logger = get_logger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class BackgroundTaskQueue:
    """
    Bounded best-effort work queue for cache and statistics writes.

    Work is dropped when the queue is full. Failures are logged and counted, never
    raised to the submitter.
    """

    def __init__(self, maxsize: int = 1000, workers: int = 2, name: str = "background") -> None:
        self.maxsize = maxsize
        self.worker_count = workers
        self.name = name
        self.dropped = 0
        self.failed = 0
        self.completed = 0
        self._queue: asyncio.Queue[tuple[str, TaskFactory]] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._loop: asyncio.AbstractEventLoop | None = None

    def _ensure_started(self, loop: asyncio.AbstractEventLoop) -> asyncio.Queue[tuple[str, TaskFactory]]:
        if self._queue is None or self._loop is not loop:
            self._loop = loop
            queue: asyncio.Queue[tuple[str, TaskFactory]] = asyncio.Queue(maxsize=self.maxsize)
            self._queue = queue
            self._workers = [
                loop.create_task(self._worker(queue), name=f"{self.name}-worker-{index}")
                for index in range(self.worker_count)
            ]
        return self._queue

    def submit(self, factory: TaskFactory, label: str = "task") -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.dropped += 1
            logger.warning("[%s] No running event loop, dropping '%s'.", self.name.upper(), label)
            return False

        queue = self._ensure_started(loop)
        try:
            queue.put_nowait((label, factory))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("[%s] Queue full (%s), dropping '%s'.", self.name.upper(), self.maxsize, label)
            return False
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def _worker(self, queue: asyncio.Queue[tuple[str, TaskFactory]]) -> None:
        while True:
            label, factory = await queue.get()
            try:
                await factory()
                self.completed += 1
            except Exception:
                self.failed += 1
                logger.exception("[%s] Background task '%s' failed.", self.name.upper(), label)
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until everything submitted so far has run."""
        if self._queue is not None:
            await self._queue.join()

    async def aclose(self) -> None:
        await self.join()
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        self._loop = None
