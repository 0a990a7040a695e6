"""
Tests for task lifecycle orchestration.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

from harvester.crawler import WorkerPool
from harvester.engine import CrawlEngine, TaskStateMachine
from harvester.exceptions import InvalidTransitionError, TaskAlreadyRunningError, TaskNotFoundError
from harvester.observability import EventHub
from harvester.observability.metrics import METRICS
from harvester.protocols import Task, TaskStatus
from tests.helpers import ControlledStrategy, metric_delta


@pytest.fixture
def strategy():
    return ControlledStrategy()


@pytest.fixture
def events():
    return EventHub()


@pytest_asyncio.fixture
async def engine(repository, strategy, events):
    engine = CrawlEngine(repository, strategy, sink=events)
    yield engine
    await engine.shutdown()


@pytest_asyncio.fixture
async def task(repository):
    return await repository.create_task(Task(name="homepage", url="https://site.test/"))


async def status_of(repository, task_id):
    return (await repository.get_task(task_id)).status


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestTaskStateMachine:
    @pytest.mark.parametrize(
        "current, event, expected",
        [
            (TaskStatus.PENDING, "start", TaskStatus.RUNNING),
            (TaskStatus.COMPLETED, "start", TaskStatus.RUNNING),
            (TaskStatus.FAILED, "start", TaskStatus.RUNNING),
            (TaskStatus.STOPPED, "start", TaskStatus.RUNNING),
            (TaskStatus.RUNNING, "pause", TaskStatus.PAUSED),
            (TaskStatus.PAUSED, "resume", TaskStatus.RUNNING),
            (TaskStatus.RUNNING, "complete", TaskStatus.COMPLETED),
            (TaskStatus.PAUSED, "complete", TaskStatus.COMPLETED),
            (TaskStatus.RUNNING, "fail", TaskStatus.FAILED),
            (TaskStatus.PENDING, "stop", TaskStatus.STOPPED),
            (TaskStatus.COMPLETED, "stop", TaskStatus.STOPPED),
        ],
    )
    def test_allowed_transitions(self, current, event, expected):
        assert TaskStateMachine().next_status(1, current, event) == expected

    @pytest.mark.parametrize("event", ["start", "resume"])
    def test_running_task_cannot_start_again(self, event):
        with pytest.raises(TaskAlreadyRunningError):
            TaskStateMachine().next_status(1, TaskStatus.RUNNING, event)

    @pytest.mark.parametrize(
        "current, event",
        [
            (TaskStatus.PENDING, "pause"),
            (TaskStatus.COMPLETED, "pause"),
            (TaskStatus.PENDING, "complete"),
            (TaskStatus.STOPPED, "fail"),
            (TaskStatus.RUNNING, "explode"),
        ],
    )
    def test_rejected_transitions(self, current, event):
        machine = TaskStateMachine()
        with pytest.raises(InvalidTransitionError):
            machine.next_status(7, current, event)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_runs_to_completion(self, engine, strategy, repository, task, wait_until):
        started = await engine.start(task.id)
        assert started.status == TaskStatus.RUNNING

        await strategy.wait_started(task.id)
        stored = await repository.get_task(task.id)
        assert stored.status == TaskStatus.RUNNING
        assert stored.started_at is not None
        assert engine.active_tasks() == [task.id]

        with metric_delta(METRICS["task_transitions"].labels(status="completed")):
            strategy.release(task.id)
            await wait_until(lambda: not engine.is_active(task.id))

        stored = await repository.get_task(task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.completed_at is not None
        assert strategy.finished == [task.id]

    @pytest.mark.asyncio
    async def test_unknown_task(self, engine):
        with pytest.raises(TaskNotFoundError):
            await engine.start(404)

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, engine, strategy, task):
        await engine.start(task.id)
        await strategy.wait_started(task.id)

        with pytest.raises(TaskAlreadyRunningError):
            await engine.start(task.id)

    @pytest.mark.asyncio
    async def test_stale_running_status_blocks_start_but_not_stop(self, engine, repository, task):
        await repository.update_task_status(task.id, TaskStatus.RUNNING)

        with pytest.raises(TaskAlreadyRunningError):
            await engine.start(task.id)

        await engine.stop(task.id)
        assert await status_of(repository, task.id) == TaskStatus.STOPPED

    @pytest.mark.asyncio
    async def test_finished_task_can_be_restarted(self, engine, strategy, repository, task, wait_until):
        await engine.start(task.id)
        strategy.release(task.id)
        await wait_until(lambda: not engine.is_active(task.id))

        await engine.start(task.id)
        await wait_until(lambda: not engine.is_active(task.id))
        assert strategy.finished == [task.id, task.id]

    @pytest.mark.asyncio
    async def test_failure_marks_task_failed(self, engine, strategy, repository, events, task, wait_until):
        queue = events.subscribe()
        strategy.fail_with = RuntimeError("upstream exploded")

        await engine.start(task.id)
        strategy.release(task.id)
        await wait_until(lambda: not engine.is_active(task.id))

        assert await status_of(repository, task.id) == TaskStatus.FAILED
        messages = [e.message for e in drain(queue) if e.type == "log"]
        assert f"Task {task.id} failed: upstream exploded" in messages

    @pytest.mark.asyncio
    async def test_status_changes_are_published(self, engine, strategy, events, task, wait_until):
        queue = events.subscribe()

        await engine.start(task.id)
        strategy.release(task.id)
        await wait_until(lambda: not engine.is_active(task.id))

        published = drain(queue)
        assert [e.status for e in published if e.type == "task_status"] == ["running", "completed"]
        assert f"Task {task.id} started" in [e.message for e in published]


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_cancels_running_execution(self, engine, strategy, repository, task):
        await engine.start(task.id)
        await strategy.wait_started(task.id)

        await engine.stop(task.id)

        assert strategy.cancelled == [task.id]
        assert ("stop", task.id) in strategy.calls
        assert not engine.is_active(task.id)
        stored = await repository.get_task(task.id)
        assert stored.status == TaskStatus.STOPPED
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_start_refused_while_stopped_crawl_unwinds(self, engine, strategy, task, wait_until):
        strategy.cleanup_delay = 0.2
        await engine.start(task.id)
        await strategy.wait_started(task.id)

        stopping = asyncio.create_task(engine.stop(task.id))
        await wait_until(lambda: strategy.unwinding == [task.id])

        with pytest.raises(TaskAlreadyRunningError):
            await engine.start(task.id)
        await stopping
        assert strategy.cancelled == [task.id]
        assert not engine.is_active(task.id)

    @pytest.mark.asyncio
    async def test_stop_without_execution(self, engine, strategy, repository, task):
        await engine.stop(task.id)

        assert await status_of(repository, task.id) == TaskStatus.STOPPED
        assert ("stop", task.id) in strategy.calls

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, repository, strategy):
        engine = CrawlEngine(repository, strategy)
        first = await repository.create_task(Task(name="a", url="https://a.test/"))
        second = await repository.create_task(Task(name="b", url="https://b.test/"))
        await engine.start(first.id)
        await engine.start(second.id)
        await strategy.wait_started(first.id)
        await strategy.wait_started(second.id)

        await engine.shutdown()

        assert engine.active_tasks() == []
        assert sorted(strategy.cancelled) == [first.id, second.id]
        assert await status_of(repository, first.id) == TaskStatus.STOPPED
        assert await status_of(repository, second.id) == TaskStatus.STOPPED


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_holds_execution_until_resume(self, engine, strategy, repository, task, wait_until):
        await engine.start(task.id)
        await strategy.wait_started(task.id)

        await engine.pause(task.id)
        assert await status_of(repository, task.id) == TaskStatus.PAUSED
        assert ("pause", task.id) in strategy.calls

        strategy.release(task.id)
        await asyncio.sleep(0.05)
        assert strategy.finished == []
        assert engine.is_active(task.id)

        resumed = await engine.resume(task.id)
        assert resumed.status == TaskStatus.RUNNING
        assert ("resume", task.id) in strategy.calls

        await wait_until(lambda: not engine.is_active(task.id))
        assert strategy.finished == [task.id]
        assert await status_of(repository, task.id) == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_on_paused_execution_resumes_it(self, engine, strategy, repository, task, wait_until):
        await engine.start(task.id)
        await strategy.wait_started(task.id)
        await engine.pause(task.id)
        strategy.release(task.id)

        await engine.start(task.id)

        await wait_until(lambda: not engine.is_active(task.id))
        assert strategy.finished == [task.id]

    @pytest.mark.asyncio
    async def test_pause_requires_running_task(self, engine, task):
        with pytest.raises(InvalidTransitionError):
            await engine.pause(task.id)

    @pytest.mark.asyncio
    async def test_resume_without_live_execution_starts_again(self, engine, strategy, repository, task):
        await repository.update_task_status(task.id, TaskStatus.PAUSED)

        await engine.resume(task.id)

        await strategy.wait_started(task.id)
        assert await status_of(repository, task.id) == TaskStatus.RUNNING

    @pytest.mark.asyncio
    async def test_stop_while_paused(self, engine, strategy, repository, task):
        await engine.start(task.id)
        await strategy.wait_started(task.id)
        await engine.pause(task.id)

        await engine.stop(task.id)

        assert strategy.cancelled == [task.id]
        assert await status_of(repository, task.id) == TaskStatus.STOPPED


class TestStrategySelection:
    @pytest.mark.asyncio
    async def test_crawler_type_selects_registered_strategy(self, repository, strategy, wait_until):
        special = ControlledStrategy()
        engine = CrawlEngine(repository, strategy, strategies={"embroidery_api": special})
        task = await repository.create_task(
            Task(name="designs", url="https://api.test/", config='{"crawler_type": "embroidery_api"}')
        )
        plain = await repository.create_task(Task(name="page", url="https://site.test/"))

        assert engine.strategy_for(task) is special
        assert engine.strategy_for(plain) is strategy

        await engine.start(task.id)
        await special.wait_started(task.id)
        assert strategy.started == {}
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_stop_reaches_every_strategy(self, repository, strategy, task):
        special = ControlledStrategy()
        engine = CrawlEngine(repository, strategy, strategies={"embroidery_api": special})

        await engine.stop(task.id)

        assert ("stop", task.id) in strategy.calls
        assert ("stop", task.id) in special.calls


class TestEnqueue:
    @pytest_asyncio.fixture
    async def pooled_engine(self, repository, strategy):
        engine = CrawlEngine(repository, strategy)
        engine.pool = WorkerPool(2, engine.pooled_runner())
        engine.pool.start()
        yield engine
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_enqueued_task_runs_on_pool(self, pooled_engine, strategy, repository, task, wait_until):
        assert await pooled_engine.enqueue(task.id) is True

        await strategy.wait_started(task.id)
        assert await status_of(repository, task.id) == TaskStatus.RUNNING
        assert pooled_engine.pool.is_running(task.id)

        strategy.release(task.id)
        await wait_until(lambda: not pooled_engine.is_active(task.id))
        assert await status_of(repository, task.id) == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_cancels_pooled_execution(self, pooled_engine, strategy, repository, task):
        await pooled_engine.enqueue(task.id)
        await strategy.wait_started(task.id)

        await pooled_engine.stop(task.id)

        assert strategy.cancelled == [task.id]
        assert await status_of(repository, task.id) == TaskStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_returns_after_pooled_crawl_unwinds(self, pooled_engine, strategy, task, wait_until):
        strategy.cleanup_delay = 0.1
        await pooled_engine.enqueue(task.id)
        await strategy.wait_started(task.id)

        await pooled_engine.stop(task.id)

        assert strategy.live[task.id] == 0
        assert not pooled_engine.is_active(task.id)

        assert await pooled_engine.enqueue(task.id) is True
        await wait_until(lambda: strategy.live[task.id] == 1)
        assert strategy.max_concurrent[task.id] == 1

    @pytest.mark.asyncio
    async def test_refused_submission_marks_task_stopped(self, pooled_engine, repository, task):
        await pooled_engine.pool.stop()

        assert await pooled_engine.enqueue(task.id) is False
        assert not pooled_engine.is_active(task.id)
        assert await status_of(repository, task.id) == TaskStatus.STOPPED

    @pytest.mark.asyncio
    async def test_enqueue_requires_pool(self, engine, task):
        with pytest.raises(RuntimeError):
            await engine.enqueue(task.id)


class TestCollaboratorFailures:
    @pytest.mark.asyncio
    async def test_strategy_stop_error_is_logged_not_raised(self, repository, strategy, task):
        broken = ControlledStrategy()
        broken.stop = AsyncMock(side_effect=RuntimeError("monitor already gone"))
        engine = CrawlEngine(repository, strategy, strategies={"embroidery_api": broken})

        await engine.stop(task.id)

        broken.stop.assert_awaited_once_with(task.id)
        assert await status_of(repository, task.id) == TaskStatus.STOPPED

    @pytest.mark.asyncio
    async def test_sink_errors_never_reach_the_task(self, repository, strategy, task, wait_until):
        sink = Mock()
        sink.publish.side_effect = RuntimeError("socket closed")
        sink.publish_status.side_effect = RuntimeError("socket closed")
        engine = CrawlEngine(repository, strategy, sink=sink)

        await engine.start(task.id)
        strategy.release(task.id)
        await wait_until(lambda: not engine.is_active(task.id))

        assert await status_of(repository, task.id) == TaskStatus.COMPLETED
        assert sink.publish_status.call_count == 2
