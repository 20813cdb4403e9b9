"""Background task queue with an explicit lifecycle.

Learning and maintenance jobs are submitted here instead of being fired and
forgotten, so callers can ``drain()`` to wait for every pending write and
``stop()`` to shut the worker down cleanly.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger

Job = Callable[[], Awaitable[None]]


class QueueState(str, Enum):
    """Lifecycle states of a background queue."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class QueueStats:
    """Counters for submitted and finished jobs."""

    submitted: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "dropped": self.dropped,
        }


class BackgroundTaskQueue:
    """Single-worker FIFO queue of async jobs.

    Jobs run one at a time on a worker task. A failing job is logged and
    counted; it never stops the worker.

    Usage:
        queue = BackgroundTaskQueue(name="learning")
        queue.start()
        queue.submit(lambda: store.flush())
        await queue.drain()
        await queue.stop()

    """

    def __init__(self, name: str = "background", max_pending: int = 1000) -> None:
        self.name = name
        self.max_pending = max_pending
        self.stats = QueueStats()
        self._queue: asyncio.Queue[Job] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._state = QueueState.IDLE

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def pending(self) -> int:
        """Jobs waiting or running."""
        return self.stats.submitted - self.stats.completed - self.stats.failed - self.stats.dropped

    def start(self) -> None:
        """Start the worker task on the running event loop. Idempotent."""
        if self._state == QueueState.RUNNING:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name=f"{self.name}-worker")
        self._worker.add_done_callback(self._handle_worker_exit)
        self._state = QueueState.RUNNING
        logger.debug(f"Background queue '{self.name}' started")

    def submit(self, job: Job) -> bool:
        """Enqueue a job.

        Args:
            job: Zero-argument coroutine function.

        Returns:
            True if queued, False if the queue is not running or is full.

        """
        if self._state != QueueState.RUNNING or self._queue is None:
            logger.warning(f"Background queue '{self.name}' not running; job dropped")
            self.stats.submitted += 1
            self.stats.dropped += 1
            return False
        if self._queue.qsize() >= self.max_pending:
            logger.warning(f"Background queue '{self.name}' full; job dropped")
            self.stats.submitted += 1
            self.stats.dropped += 1
            return False
        self.stats.submitted += 1
        self._queue.put_nowait(job)
        return True

    async def drain(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None and self._state == QueueState.RUNNING:
            await self._queue.join()

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the worker.

        Args:
            drain: Finish queued jobs first. When False, pending jobs are dropped.

        """
        if self._state != QueueState.RUNNING:
            return
        if drain:
            await self.drain()
        elif self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
                self.stats.dropped += 1
        self._state = QueueState.STOPPED
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        logger.debug(f"Background queue '{self.name}' stopped: {self.stats.to_dict()}")

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await job()
                self.stats.completed += 1
            except asyncio.CancelledError:
                self.stats.dropped += 1
                raise
            except Exception as e:
                self.stats.failed += 1
                logger.warning(f"Background job on '{self.name}' failed: {e}")
            finally:
                self._queue.task_done()

    def _handle_worker_exit(self, task: asyncio.Task[None]) -> None:
        """Log an unexpected worker exit to prevent silent failures."""
        if task.cancelled():
            return
        if exc := task.exception():
            logger.error(f"Background queue '{self.name}' worker crashed: {exc}")
        self._state = QueueState.STOPPED
