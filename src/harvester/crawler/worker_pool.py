"""
Fixed-size pool of asyncio workers draining a bounded task queue.
"""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

import structlog

if TYPE_CHECKING:
    from harvester.protocols import CrawlStrategy, Task

logger = structlog.get_logger(__name__)


class WorkerPool:
    """
    Runs ``crawler.crawl(task)`` for submitted tasks on ``size`` workers.

    A failing crawl is logged and the worker moves on. ``stop`` cancels the
    workers and only returns once every in-flight crawl has returned; tasks
    still queued at that point are discarded.
    """

    def __init__(self, size: int, crawler: CrawlStrategy) -> None:
        if size < 1:
            raise ValueError("worker pool size must be at least 1")
        self.size = size
        self.crawler = crawler
        self.queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=size * 2)
        self._workers: List[asyncio.Task[None]] = []
        self._running: Dict[int, asyncio.Task[None]] = {}
        self._running_lock = threading.Lock()
        self._closing: Optional[asyncio.Event] = None

    @property
    def started(self) -> bool:
        return bool(self._workers)

    @property
    def closing(self) -> bool:
        return self._closing is not None and self._closing.is_set()

    def start(self) -> None:
        if self._workers:
            return
        self._closing = asyncio.Event()
        self._workers = [asyncio.create_task(self._worker(i), name=f"worker-{i}") for i in range(self.size)]
        logger.info("Worker pool started", workers=self.size)

    async def submit(self, task: Task) -> bool:
        """
        Queue ``task``, waiting for room if the queue is full.

        Returns False without queueing when the pool is not running or shuts
        down while waiting.
        """
        if self._closing is None or self._closing.is_set():
            logger.warning("Worker pool not accepting tasks", task_id=task.id)
            return False

        put = asyncio.ensure_future(self.queue.put(task))
        closed = asyncio.ensure_future(self._closing.wait())
        try:
            await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
        if put.done() and not self._closing.is_set():
            return True
        put.cancel()
        logger.warning("Worker pool shut down before task was queued", task_id=task.id)
        return False

    def is_running(self, task_id: int) -> bool:
        with self._running_lock:
            return task_id in self._running

    def cancel(self, task_id: int) -> Optional[asyncio.Task[None]]:
        """Cancel the in-flight crawl for ``task_id``. Returns the cancelled job, if any."""
        with self._running_lock:
            job = self._running.get(task_id)
        if job is None:
            return None
        job.cancel()
        return job

    async def cancel_and_wait(self, task_id: int) -> bool:
        """Cancel the in-flight crawl for ``task_id`` and return once it has unwound."""
        job = self.cancel(task_id)
        if job is None:
            return False
        await asyncio.gather(job, return_exceptions=True)
        return True

    async def _worker(self, index: int) -> None:
        logger.debug("Worker started", worker_id=index)
        while True:
            task = await self.queue.get()
            try:
                await self._run(index, task)
            finally:
                self.queue.task_done()

    async def _run(self, index: int, task: Task) -> None:
        logger.debug("Worker processing task", worker_id=index, task_id=task.id)
        job = asyncio.create_task(self.crawler.crawl(task), name=f"worker-{index}-task-{task.id}")
        if task.id is not None:
            with self._running_lock:
                self._running[task.id] = job
        try:
            try:
                await asyncio.wait({job})
            except asyncio.CancelledError:
                # Pool shutdown: the crawl must observe cancellation before the worker exits
                job.cancel()
                await asyncio.gather(job, return_exceptions=True)
                raise
        finally:
            if task.id is not None:
                with self._running_lock:
                    if self._running.get(task.id) is job:
                        del self._running[task.id]

        if job.cancelled():
            logger.info("Worker crawl cancelled", worker_id=index, task_id=task.id)
        elif job.exception() is not None:
            logger.error("Worker failed to crawl", worker_id=index, task_id=task.id, error=str(job.exception()))

    async def stop(self) -> None:
        if self._closing is None:
            return
        self._closing.set()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        discarded = 0
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
            discarded += 1
        logger.info("Worker pool stopped", discarded=discarded)
