import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple

logger = logging.getLogger("gateway.tasks")

Job = Tuple[Callable[..., Awaitable[Any]], tuple]


def _job_name(func: Callable) -> str:
    return getattr(func, "__qualname__", repr(func))


class BackgroundTaskQueue:
    """
    Bounded queue of fire-and-forget coroutines drained by a single worker.

    HARD GUARANTEES:
    - submit() never awaits and never raises
    - a failing job is logged and never stops the worker
    - stop() drains what is queued, up to a timeout
    """

    def __init__(self, max_size: int = 10_000):
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=max_size)
        self._worker_task: Optional[asyncio.Task] = None

    # ======================================================
    # Lifecycle
    # ======================================================

    def start(self) -> None:
        """
        Must be called after the event loop is running.
        """
        if self._worker_task is not None:
            return

        self._worker_task = asyncio.get_running_loop().create_task(self._worker())
        logger.info("Background task queue started")

    async def stop(self, timeout: float = 5.0) -> None:
        """
        Wait for queued jobs to finish, then cancel the worker.
        """
        if self._worker_task is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Background queue not drained after {timeout}s, "
                f"abandoning {self._queue.qsize()} jobs"
            )

        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass

        self._worker_task = None
        logger.info("Background task queue stopped")

    @property
    def running(self) -> bool:
        return self._worker_task is not None

    async def join(self) -> None:
        """
        Wait until every job submitted so far has run.
        """
        await self._queue.join()

    # ======================================================
    # Public API
    # ======================================================

    def submit(self, func: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        """
        Queue func(*args) for the worker. Returns False when the job was dropped.
        """
        if self._worker_task is None:
            logger.warning(f"Background queue not running, dropping {_job_name(func)}")
            return False

        try:
            self._queue.put_nowait((func, args))
        except asyncio.QueueFull:
            logger.warning(f"Background queue full, dropping {_job_name(func)}")
            return False

        return True

    # ======================================================
    # Worker
    # ======================================================

    async def _worker(self) -> None:
        while True:
            func, args = await self._queue.get()
            try:
                await func(*args)
            except Exception:
                logger.exception(f"Background job {_job_name(func)} failed")
            finally:
                self._queue.task_done()
