"""
Task lifecycle orchestration.

``CrawlEngine`` owns one cancellable execution per started task. Executions
are either detached asyncio tasks (``start``) or jobs on the worker pool
(``enqueue``); either way the engine drives the status transitions and
narrates them through the log sink.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Mapping, Optional, Tuple

import structlog

from harvester.exceptions import InvalidTransitionError, TaskAlreadyRunningError
from harvester.observability.events import NullSink
from harvester.observability.metrics import METRICS
from harvester.protocols import CrawlControl, Task, TaskStatus, utcnow

if TYPE_CHECKING:
    from harvester.crawler.worker_pool import WorkerPool
    from harvester.protocols import CrawlStrategy, LogSink, Repository

logger = structlog.get_logger(__name__)

_ALL = frozenset(TaskStatus)


class TaskStateMachine:
    """Allowed lifecycle events per status and where each one leads."""

    TRANSITIONS: Mapping[str, Tuple[FrozenSet[TaskStatus], TaskStatus]] = {
        "start": (_ALL - {TaskStatus.RUNNING}, TaskStatus.RUNNING),
        "pause": (frozenset({TaskStatus.RUNNING, TaskStatus.PAUSED}), TaskStatus.PAUSED),
        "resume": (_ALL - {TaskStatus.RUNNING}, TaskStatus.RUNNING),
        "stop": (_ALL, TaskStatus.STOPPED),
        "complete": (frozenset({TaskStatus.RUNNING, TaskStatus.PAUSED}), TaskStatus.COMPLETED),
        "fail": (frozenset({TaskStatus.RUNNING, TaskStatus.PAUSED}), TaskStatus.FAILED),
    }

    def can(self, current: TaskStatus, event: str) -> bool:
        allowed, _ = self.TRANSITIONS[event]
        return current in allowed

    def next_status(self, task_id: int, current: TaskStatus, event: str) -> TaskStatus:
        """
        Raises:
            TaskAlreadyRunningError: ``start`` on a running task
            InvalidTransitionError: any other event not allowed from ``current``
        """
        if event not in self.TRANSITIONS:
            raise InvalidTransitionError(task_id, current.value, event)
        allowed, target = self.TRANSITIONS[event]
        if current not in allowed:
            if event in ("start", "resume") and current == TaskStatus.RUNNING:
                raise TaskAlreadyRunningError(task_id)
            raise InvalidTransitionError(task_id, current.value, event)
        return target


@dataclass
class _Execution:
    task: Task
    control: CrawlControl
    status: TaskStatus = TaskStatus.RUNNING
    handle: Optional[asyncio.Task[None]] = None
    pooled: bool = False


class _PooledRunner:
    """Adapter the worker pool calls back into for queued executions."""

    def __init__(self, engine: CrawlEngine) -> None:
        self.engine = engine

    async def crawl(self, task: Task, control: Optional[CrawlControl] = None) -> None:
        assert task.id is not None
        execution = self.engine._get_execution(task.id)
        if execution is None or not execution.pooled:
            logger.info("Skipping queued task that is no longer active", task_id=task.id)
            return
        await self.engine._execute(execution)

    async def stop(self, task_id: int) -> None:
        return None

    async def pause(self, task_id: int) -> None:
        return None

    async def resume(self, task_id: int) -> None:
        return None


class CrawlEngine:
    def __init__(
        self,
        repository: Repository,
        default_strategy: CrawlStrategy,
        strategies: Optional[Mapping[str, CrawlStrategy]] = None,
        sink: Optional[LogSink] = None,
        pool: Optional[WorkerPool] = None,
        machine: Optional[TaskStateMachine] = None,
    ) -> None:
        self.repository = repository
        self.default_strategy = default_strategy
        self.strategies: Dict[str, CrawlStrategy] = dict(strategies or {})
        self.sink: LogSink = sink or NullSink()
        self.pool = pool
        self.machine = machine or TaskStateMachine()
        self._executions: Dict[int, _Execution] = {}
        self._executions_lock = threading.Lock()

    def pooled_runner(self) -> _PooledRunner:
        """The strategy to hand to a ``WorkerPool`` serving ``enqueue``."""
        return _PooledRunner(self)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def strategy_for(self, task: Task) -> CrawlStrategy:
        crawler_type = task.settings.crawler_type
        if crawler_type and crawler_type in self.strategies:
            return self.strategies[crawler_type]
        return self.default_strategy

    def _all_strategies(self) -> List[CrawlStrategy]:
        unique: List[CrawlStrategy] = []
        for strategy in [self.default_strategy, *self.strategies.values()]:
            if not any(strategy is seen for seen in unique):
                unique.append(strategy)
        return unique

    def _get_execution(self, task_id: int) -> Optional[_Execution]:
        with self._executions_lock:
            return self._executions.get(task_id)

    def active_tasks(self) -> List[int]:
        with self._executions_lock:
            return sorted(self._executions)

    def is_active(self, task_id: int) -> bool:
        return self._get_execution(task_id) is not None

    def _narrate(self, task_id: int, level: str, message: str) -> None:
        getattr(logger, level)(message, task_id=task_id)
        try:
            self.sink.publish(task_id, level, message)
        except Exception as e:
            logger.debug("Log sink publish failed", task_id=task_id, error=str(e))

    async def _set_status(self, task_id: int, status: TaskStatus, **timestamps) -> None:
        await self.repository.update_task_status(task_id, status, **timestamps)
        METRICS["task_transitions"].labels(status=status.value).inc()
        try:
            self.sink.publish_status(task_id, status.value)
        except Exception as e:
            logger.debug("Log sink status publish failed", task_id=task_id, error=str(e))

    # ------------------------------------------------------------------
    # Lifecycle commands
    # ------------------------------------------------------------------

    async def _begin(self, task_id: int, event: str) -> Tuple[Task, _Execution]:
        task = await self.repository.get_task(task_id)
        with self._executions_lock:
            live = task_id in self._executions
        if live:
            raise TaskAlreadyRunningError(task_id)
        self.machine.next_status(task_id, task.status, event)

        execution = _Execution(task=task, control=CrawlControl(task_id))
        with self._executions_lock:
            if task_id in self._executions:
                raise TaskAlreadyRunningError(task_id)
            self._executions[task_id] = execution

        try:
            await self._set_status(task_id, TaskStatus.RUNNING, started_at=utcnow())
        except Exception:
            self._forget(execution)
            raise
        task.status = TaskStatus.RUNNING
        return task, execution

    async def start(self, task_id: int) -> Task:
        """
        Run the task on its own detached execution.

        Raises:
            TaskNotFoundError: unknown task id
            TaskAlreadyRunningError: the task is running
        """
        execution = self._get_execution(task_id)
        if execution is not None and execution.status == TaskStatus.PAUSED:
            return await self._unpause(execution)

        task, execution = await self._begin(task_id, "start")
        execution.handle = asyncio.create_task(self._execute(execution), name=f"task-{task_id}")
        self._narrate(task_id, "info", f"Task {task_id} started")
        return task

    async def enqueue(self, task_id: int) -> bool:
        """
        Run the task on the worker pool. Returns False when the pool refused it.
        """
        if self.pool is None:
            raise RuntimeError("no worker pool configured")
        task, execution = await self._begin(task_id, "start")
        execution.pooled = True
        if not await self.pool.submit(task):
            self._forget(execution)
            await self._set_status(task_id, TaskStatus.STOPPED)
            self._narrate(task_id, "warning", f"Task {task_id} was not queued, worker pool is shutting down")
            return False
        self._narrate(task_id, "info", f"Task {task_id} queued")
        return True

    async def stop(self, task_id: int) -> None:
        """Cancel the execution and the incremental monitor, then mark the task stopped."""
        task = await self.repository.get_task(task_id)
        self.machine.next_status(task_id, task.status, "stop")

        # The execution stays registered until its crawl has unwound so a
        # concurrent start is refused meanwhile
        execution = self._get_execution(task_id)
        if execution is not None:
            if execution.handle is not None:
                execution.handle.cancel()
                await asyncio.gather(execution.handle, return_exceptions=True)
            elif self.pool is not None:
                await self.pool.cancel_and_wait(task_id)
            self._forget(execution)

        for strategy in self._all_strategies():
            try:
                await strategy.stop(task_id)
            except Exception as e:
                logger.error("Strategy failed to stop task", task_id=task_id, error=str(e))

        await self._set_status(task_id, TaskStatus.STOPPED, completed_at=utcnow())
        self._narrate(task_id, "info", f"Task {task_id} stopped")

    async def pause(self, task_id: int) -> None:
        """Close the execution's pause gate; the crawl halts at its next checkpoint."""
        task = await self.repository.get_task(task_id)
        execution = self._get_execution(task_id)
        current = execution.status if execution is not None else task.status
        self.machine.next_status(task_id, current, "pause")

        if execution is not None:
            execution.control.pause()
            execution.status = TaskStatus.PAUSED
            await self.strategy_for(execution.task).pause(task_id)

        await self._set_status(task_id, TaskStatus.PAUSED)
        self._narrate(task_id, "info", f"Task {task_id} paused")

    async def resume(self, task_id: int) -> Task:
        """Re-open a paused execution, or start a new one from the persisted cursor."""
        execution = self._get_execution(task_id)
        if execution is not None and execution.status == TaskStatus.PAUSED:
            return await self._unpause(execution)
        return await self.start(task_id)

    async def _unpause(self, execution: _Execution) -> Task:
        task_id = execution.control.task_id
        self.machine.next_status(task_id, execution.status, "resume")
        await self._set_status(task_id, TaskStatus.RUNNING)
        execution.status = TaskStatus.RUNNING
        execution.task.status = TaskStatus.RUNNING
        execution.control.resume()
        await self.strategy_for(execution.task).resume(task_id)
        self._narrate(task_id, "info", f"Task {task_id} resumed")
        return execution.task

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _forget(self, execution: _Execution) -> None:
        task_id = execution.control.task_id
        with self._executions_lock:
            if self._executions.get(task_id) is execution:
                del self._executions[task_id]

    async def _execute(self, execution: _Execution) -> None:
        task = execution.task
        assert task.id is not None
        strategy = self.strategy_for(task)
        with structlog.contextvars.bound_contextvars(task_id=task.id):
            try:
                try:
                    await strategy.crawl(task, execution.control)
                except asyncio.CancelledError:
                    # Whoever cancelled owns the resulting status
                    logger.info("Task execution cancelled", task_id=task.id)
                    raise
                except Exception as e:
                    self.machine.next_status(task.id, execution.status, "fail")
                    await self._set_status(task.id, TaskStatus.FAILED, completed_at=utcnow())
                    self._narrate(task.id, "error", f"Task {task.id} failed: {e}")
                    return

                self.machine.next_status(task.id, execution.status, "complete")
                await self._set_status(task.id, TaskStatus.COMPLETED, completed_at=utcnow())
                self._narrate(task.id, "info", f"Task {task.id} completed")
            finally:
                self._forget(execution)

    async def shutdown(self) -> None:
        """Stop every live execution, the worker pool and all monitors."""
        for task_id in self.active_tasks():
            try:
                await self.stop(task_id)
            except Exception as e:
                logger.error("Failed to stop task during shutdown", task_id=task_id, error=str(e))
        if self.pool is not None:
            await self.pool.stop()
        for strategy in self._all_strategies():
            stop_all = getattr(strategy, "stop_all_monitors", None)
            if stop_all is not None:
                await stop_all()
        logger.info("Crawl engine shut down")
