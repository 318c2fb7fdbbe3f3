"""Propagation queue — runs async reverse-embed updates off the write path."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from docrel.config import settings
from docrel.kernel.registry import RegistryEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PropagationJob:
    """A snapshot refresh for one dependent relation, detached from its caller."""

    source: str
    entry: RegistryEntry
    document: dict[str, Any]
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def describe(self) -> str:
        return f"{self.source} -> {self.entry.dependent}.{self.entry.relation_name}"


class PropagationQueue:
    """
    Bounded queue drained by a pool of background workers.

    Enqueue is O(1) and never blocks the caller. Delivery is at-most-once:
    a full queue drops the new job, and a failed job is logged and never
    retried. Workers start on first enqueue (or explicit start()) inside the
    running event loop.
    """

    def __init__(
        self,
        apply: Callable[[PropagationJob], Awaitable[Any]],
        *,
        workers: int | None = None,
        maxsize: int | None = None,
    ) -> None:
        self._apply = apply
        self.workers = workers if workers is not None else settings.PROPAGATION_WORKERS
        self.maxsize = maxsize if maxsize is not None else settings.PROPAGATION_QUEUE_SIZE
        self._queue: asyncio.Queue[PropagationJob] = asyncio.Queue(maxsize=self.maxsize)
        self._tasks: list[asyncio.Task] = []
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Spawn the worker tasks. Requires a running event loop."""
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"docrel-propagation-{i}") for i in range(self.workers)
        ]
        logger.info("propagation_queue: started %d workers", self.workers)

    def enqueue(self, job: PropagationJob) -> bool:
        """
        Add a job (non-blocking).

        Returns:
            False if the queue was full and the job was dropped
        """
        self.start()
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("propagation_queue: queue full (%d), dropped %s", self.maxsize, job.describe())
            return False
        return True

    async def join(self) -> None:
        """Wait until every enqueued job has been processed."""
        await self._queue.join()

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the workers, optionally after draining the queue first."""
        if drain and self.running:
            await self.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(
            "propagation_queue: stopped (completed=%d failed=%d dropped=%d)",
            self.completed,
            self.failed,
            self.dropped,
        )

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._apply(job)
                self.completed += 1
            except Exception:
                self.failed += 1
                logger.exception("propagation_queue: worker %d failed %s", index, job.describe())
            finally:
                self._queue.task_done()
