"""
In-process task event fan-out.

Crawlers and the engine narrate progress through a ``LogSink``. The hub keeps
one bounded queue per subscriber so a slow consumer (a UI socket, a CLI tail)
never blocks a crawl; when a subscriber falls behind its newest events are
dropped.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Literal, Optional

import structlog

logger = structlog.get_logger(__name__)

EventType = Literal["log", "task_status"]


@dataclass(frozen=True)
class TaskEvent:
    type: EventType
    task_id: int
    message: str = ""
    level: str = "info"
    status: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = {
            "type": self.type,
            "task_id": self.task_id,
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.status is not None:
            data["status"] = self.status
        return data


class NullSink:
    """Discards every event."""

    def publish(self, task_id: int, level: str, message: str) -> None:
        return None

    def publish_status(self, task_id: int, status: str) -> None:
        return None


class EventHub:
    """Fans task events out to any number of subscriber queues."""

    def __init__(self, max_queue_size: int = 1000) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: List[asyncio.Queue[TaskEvent]] = []
        self._lock = threading.Lock()
        self.dropped = 0

    def subscribe(self) -> asyncio.Queue[TaskEvent]:
        queue: asyncio.Queue[TaskEvent] = asyncio.Queue(maxsize=self.max_queue_size)
        with self._lock:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[TaskEvent]) -> None:
        with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, task_id: int, level: str, message: str) -> None:
        self._broadcast(TaskEvent(type="log", task_id=task_id, level=level, message=message))

    def publish_status(self, task_id: int, status: str) -> None:
        self._broadcast(
            TaskEvent(type="task_status", task_id=task_id, status=status, message=f"status changed to {status}")
        )

    def _broadcast(self, event: TaskEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.debug("Subscriber queue full, dropping event", task_id=event.task_id, type=event.type)
