"""Bounded in-process pool for fire-and-forget work.

Request paths submit a coroutine factory and return immediately; a fixed
number of worker tasks drain the queue. Submission never blocks: when the
queue is full the task is dropped and logged.

Tasks are held in memory only. Work still queued when the process dies is
lost; a graceful stop() drains the queue first.

Example:
    pool = BackgroundTaskPool(PoolConfig(workers=4, queue_size=1000))
    async with pool:
        pool.submit("aggregate-order", lambda: aggregator.process(order), ref=order.id)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from types import TracebackType
from typing import Any

from crust.observability.metrics import get_metrics, record_background_task

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


@dataclass
class PoolConfig:
    """Pool configuration."""

    name: str = "background"
    workers: int = 4
    queue_size: int = 1000
    drain_timeout: float = 30.0


class BackgroundTaskPool:
    """Fixed set of asyncio workers consuming a bounded queue."""

    def __init__(self, config: PoolConfig | None = None) -> None:
        self.config = config or PoolConfig()
        self._queue: asyncio.Queue[tuple[str, str, TaskFactory]] = asyncio.Queue(
            maxsize=self.config.queue_size
        )
        self._workers: list[asyncio.Task[None]] = []
        self._running = False
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"{self.config.name}-worker-{i}")
            for i in range(self.config.workers)
        ]
        logger.info(f"Started {self.config.name} pool with {self.config.workers} workers")

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers, first waiting for queued tasks when ``drain`` is set."""
        if not self._running:
            return

        if drain:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self.config.drain_timeout)
            except TimeoutError:
                logger.warning(
                    f"{self.config.name} pool drain timed out with {self.depth} tasks queued"
                )

        self._running = False
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"Stopped {self.config.name} pool")

    def submit(self, kind: str, factory: TaskFactory, ref: str | None = None) -> bool:
        """Queue a task without waiting. Returns False if it was dropped.

        ``kind`` is a fixed task type and is the only value used as a metric
        label; ``ref`` identifies this particular task (e.g. an order id) in logs.
        """
        label = f"{kind}:{ref}" if ref else kind
        try:
            self._queue.put_nowait((kind, label, factory))
        except asyncio.QueueFull:
            self.dropped += 1
            record_background_task(kind, "dropped")
            logger.warning(
                f"{self.config.name} pool queue full ({self.config.queue_size}), dropped task {label}"
            )
            return False

        record_background_task(kind, "submitted")
        get_metrics().background_queue_depth.set(self.depth)
        return True

    async def join(self) -> None:
        """Wait until every queued task has finished."""
        await self._queue.join()

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "workers": len(self._workers),
            "queued": self.depth,
            "completed": self.completed,
            "failed": self.failed,
            "dropped": self.dropped,
        }

    async def _worker_loop(self, index: int) -> None:
        while True:
            kind, label, factory = await self._queue.get()
            try:
                await factory()
                self.completed += 1
                record_background_task(kind, "completed")
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                record_background_task(kind, "failed")
                logger.exception(f"Background task {label} failed in worker {index}")
            finally:
                self._queue.task_done()
                get_metrics().background_queue_depth.set(self.depth)

    async def __aenter__(self) -> BackgroundTaskPool:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
