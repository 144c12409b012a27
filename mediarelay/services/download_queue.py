"""Serialized download queue.

Each backend family gets one FIFO queue with a single worker, so at most one
task per family is in flight. After every task that ran, success or failure,
the worker sleeps a courtesy delay before starting the next one.

Cancellation:
- a submitter cancelled before its task starts: the task is skipped
- a submitter cancelled while its task runs: the task is cancelled and the
  worker moves on; a stream produced anyway is closed
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from mediarelay.services import logger


TaskFactory = Callable[[], Awaitable[Any]]


async def _discard(result: Any) -> None:
    """Close a result nobody is waiting for anymore."""
    aclose = getattr(result, "aclose", None)
    if aclose is not None:
        try:
            await aclose()
        except Exception as e:
            logger.warn(f"Failed to close abandoned result: {e}", "queue")


class DownloadQueue:
    """FIFO queue with concurrency 1 and a delay after every task."""

    def __init__(self, name: str, delay_seconds: float = 1.0):
        self.name = name
        self.delay_seconds = delay_seconds
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def submit(self, factory: TaskFactory) -> Any:
        """
        Enqueue a task and wait for its result.

        Args:
            factory: Zero-argument callable returning the coroutine to run

        Returns:
            Whatever the task returns; task exceptions propagate to the caller
        """
        if self._closed:
            raise RuntimeError(f"Download queue {self.name} is closed")

        self._ensure_worker()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((factory, future))
        logger.debug(
            f"Task queued on {self.name} (pending: {self._queue.qsize()})",
            "queue",
            {"queue": self.name},
        )
        return await future

    async def _run(self) -> None:
        while True:
            factory, future = await self._queue.get()
            try:
                if future.done():
                    logger.debug(f"Skipping cancelled task on {self.name}", "queue", {"queue": self.name})
                    continue
                await self._execute(factory, future)
                await asyncio.sleep(self.delay_seconds)
            finally:
                self._queue.task_done()

    async def _execute(self, factory: TaskFactory, future: asyncio.Future) -> None:
        job = asyncio.ensure_future(factory())

        def _on_abandoned(f: asyncio.Future) -> None:
            if f.cancelled():
                job.cancel()

        future.add_done_callback(_on_abandoned)
        try:
            await asyncio.wait({job})
        except asyncio.CancelledError:
            job.cancel()
            raise
        finally:
            future.remove_done_callback(_on_abandoned)

        if job.cancelled():
            logger.info(f"Task cancelled on {self.name}", "queue", {"queue": self.name})
            if not future.done():
                future.cancel()
            return

        error = job.exception()
        if error is not None:
            if not future.done():
                future.set_exception(error)
            return

        result = job.result()
        if future.done():
            await _discard(result)
        else:
            future.set_result(result)

    async def close(self) -> None:
        """Stop the worker and cancel every waiting submitter."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        if self._queue is not None:
            while not self._queue.empty():
                _, future = self._queue.get_nowait()
                if not future.done():
                    future.cancel()


class QueueRegistry:
    """One DownloadQueue per backend family."""

    def __init__(self, delay_seconds: float = 1.0):
        self.delay_seconds = delay_seconds
        self._queues: Dict[str, DownloadQueue] = {}

    def get(self, family: str) -> DownloadQueue:
        if family not in self._queues:
            self._queues[family] = DownloadQueue(family, self.delay_seconds)
        return self._queues[family]

    async def close(self) -> None:
        for queue in self._queues.values():
            await queue.close()
