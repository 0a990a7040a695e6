"""
Tests for task event fan-out.
"""

import pytest

from harvester.observability import EventHub, NullSink, TaskEvent


@pytest.mark.asyncio
async def test_every_subscriber_receives_events():
    hub = EventHub()
    first, second = hub.subscribe(), hub.subscribe()

    hub.publish(3, "info", "Page 1: 100 products processed")
    hub.publish_status(3, "completed")

    for queue in (first, second):
        log, status = queue.get_nowait(), queue.get_nowait()
        assert (log.type, log.level, log.message) == ("log", "info", "Page 1: 100 products processed")
        assert (status.type, status.status) == ("task_status", "completed")


@pytest.mark.asyncio
async def test_unsubscribed_queue_stops_receiving():
    hub = EventHub()
    queue = hub.subscribe()
    hub.unsubscribe(queue)
    hub.unsubscribe(queue)

    hub.publish(1, "info", "ignored")

    assert queue.empty()
    assert hub.subscriber_count == 0


@pytest.mark.asyncio
async def test_slow_subscriber_drops_instead_of_blocking():
    hub = EventHub(max_queue_size=2)
    queue = hub.subscribe()

    for i in range(5):
        hub.publish(1, "info", f"event {i}")

    assert queue.qsize() == 2
    assert hub.dropped == 3
    assert queue.get_nowait().message == "event 0"


def test_event_serialization():
    event = TaskEvent(type="task_status", task_id=9, status="failed", message="status changed to failed")
    data = event.to_dict()
    assert data["type"] == "task_status"
    assert data["status"] == "failed"
    assert data["timestamp"].endswith("+00:00")
    assert "status" not in TaskEvent(type="log", task_id=9).to_dict()


def test_null_sink_accepts_everything():
    sink = NullSink()
    assert sink.publish(1, "error", "boom") is None
    assert sink.publish_status(1, "failed") is None
