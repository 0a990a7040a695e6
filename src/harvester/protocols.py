"""
Core contracts and data structures for the crawl orchestration engine.

The engine only depends on the narrow collaborator contracts declared here:
a ``Repository`` for durable state, a ``LogSink`` for narration and a
``CrawlStrategy`` per kind of task. Concrete implementations live in
``harvester.storage``, ``harvester.observability`` and ``harvester.crawler``.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger(__name__)

# ============================================================================
# Enums and Constants
# ============================================================================

MAX_TRACKED_ERRORS = 100


class TaskStatus(str, Enum):
    """Lifecycle states of a crawl task."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class TaskType(str, Enum):
    API = "api"
    WEB = "web"


class ProductStatus(str, Enum):
    """Review state of a harvested product. New records start as pending."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ProxyType(str, Enum):
    HTTP = "http"
    HTTPS = "https"
    SOCKS5 = "socks5"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Core Dataclasses
# ============================================================================


@dataclass
class Task:
    """A unit of crawl work as stored by the repository."""

    name: str
    url: str
    type: TaskType = TaskType.WEB
    status: TaskStatus = TaskStatus.PENDING
    config: str = "{}"
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def settings(self) -> TaskConfig:
        return TaskConfig.parse(self.config, task_id=self.id)


@dataclass
class Proxy:
    """An egress proxy credential with its health bookkeeping."""

    host: str
    port: int
    type: ProxyType = ProxyType.HTTP
    username: Optional[str] = None
    password: Optional[str] = None
    is_active: bool = True
    failure_count: int = 0
    last_checked: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def copy(self) -> Proxy:
        return replace(self)


@dataclass
class Product:
    """A catalogue record harvested from the search API, keyed by its upstream id."""

    elastic_id: str
    product_id: Optional[str] = None
    item_id: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None
    catalog: Optional[str] = None
    artist: Optional[str] = None
    rating: Optional[float] = None
    list_price: Optional[float] = None
    sale_price: Optional[float] = None
    club_price: Optional[float] = None
    sale_rank: Optional[int] = None
    customer_interest_index: Optional[int] = None
    in_stock: Optional[bool] = None
    is_active: Optional[bool] = None
    is_buyable: Optional[bool] = None
    is_licensed: Optional[bool] = None
    color_sequence: Optional[str] = None
    definition_name: Optional[str] = None
    product_type: Optional[str] = None
    gtin: Optional[str] = None
    design_keywords: Optional[str] = None
    categories: Optional[str] = None
    categories_list: Optional[str] = None
    keywords: Optional[str] = None
    sales_list: Optional[str] = None
    variants: Optional[str] = None
    sale_end_date: Optional[datetime] = None
    year_created: Optional[datetime] = None
    applied_discount_id: Optional[int] = None
    raw_data: str = "{}"
    status: str = ProductStatus.PENDING.value
    id: Optional[int] = None


@dataclass
class CrawlResult:
    """Outcome of a single-request crawl."""

    task_id: int
    url: str
    method: str = "GET"
    status_code: Optional[int] = None
    headers: str = "{}"
    body: Optional[str] = None
    response_time_ms: int = 0
    proxy_used: Optional[str] = None
    error: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class CrawlStats:
    """Running counters for one paginated crawl invocation. Never persisted."""

    start_offset: int = 0
    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)
    start_time: float = field(default_factory=time.monotonic)
    last_update: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        if self.total_processed < self.start_offset:
            self.total_processed = self.start_offset

    def record_success(self) -> None:
        self.success_count += 1
        self.last_update = time.monotonic()

    def record_error(self, message: str) -> None:
        self.error_count += 1
        if len(self.errors) < MAX_TRACKED_ERRORS:
            self.errors.append(message)
        self.last_update = time.monotonic()

    def advance(self, count: int) -> None:
        self.total_processed += count
        self.last_update = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    @property
    def processed_this_run(self) -> int:
        return self.total_processed - self.start_offset

    def estimate_remaining(self, remaining: int) -> Optional[float]:
        """Seconds left, from the average time per item processed in this run."""
        done = self.processed_this_run
        if done <= 0 or remaining <= 0:
            return None
        return (self.elapsed / done) * remaining


# ============================================================================
# Task configuration
# ============================================================================


class TaskConfig(BaseModel):
    """
    Typed view of the task's JSON configuration blob.

    Unknown keys are kept so that writing the blob back never loses settings
    owned by other components.
    """

    model_config = ConfigDict(extra="allow")

    crawler_type: Optional[str] = None
    last_from: Optional[int] = Field(default=None, ge=0)
    method: Optional[str] = None
    headers: Optional[Dict[str, str]] = None

    @classmethod
    def parse(cls, raw: Optional[str], task_id: Optional[int] = None) -> TaskConfig:
        if not raw:
            return cls()
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Invalid task config, using defaults", task_id=task_id, error=str(e))
            return cls()

    @property
    def resume_from(self) -> int:
        return self.last_from or 0

    def with_cursor(self, offset: int) -> TaskConfig:
        return self.model_copy(update={"last_from": offset})

    def without_cursor(self) -> TaskConfig:
        return self.model_copy(update={"last_from": None})

    def to_json(self) -> str:
        return json.dumps(self.model_dump(exclude_none=True), sort_keys=True)


# ============================================================================
# Execution control
# ============================================================================


class CrawlControl:
    """
    Per-execution handle shared between the engine and a running strategy.

    The pause gate is open while the task may run. Strategies call
    ``checkpoint()`` at safe points; it blocks while the gate is closed.
    """

    def __init__(self, task_id: int) -> None:
        self.task_id = task_id
        self._gate = asyncio.Event()
        self._gate.set()

    @property
    def paused(self) -> bool:
        return not self._gate.is_set()

    def pause(self) -> None:
        self._gate.clear()

    def resume(self) -> None:
        self._gate.set()

    async def checkpoint(self) -> None:
        if not self._gate.is_set():
            logger.info("Execution paused, waiting for resume", task_id=self.task_id)
            await self._gate.wait()
            logger.info("Execution resumed", task_id=self.task_id)


# ============================================================================
# Collaborator Protocols
# ============================================================================


class LogSink(Protocol):
    def publish(self, task_id: int, level: str, message: str) -> None:
        ...

    def publish_status(self, task_id: int, status: str) -> None:
        ...


class Repository(Protocol):
    async def create_task(self, task: Task) -> Task:
        ...

    async def get_task(self, task_id: int) -> Task:
        ...

    async def list_tasks(self) -> List[Task]:
        ...

    async def update_task(self, task: Task) -> None:
        ...

    async def update_task_status(
        self,
        task_id: int,
        status: TaskStatus,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        ...

    async def update_task_config(self, task_id: int, config: str) -> None:
        ...

    async def upsert_product(self, product: Product) -> None:
        ...

    async def get_payload_overrides(self) -> Dict[str, Any]:
        ...

    async def update_payload_overrides(self, overrides: Dict[str, Any]) -> None:
        ...

    async def get_proxy(self, proxy_id: int) -> Optional[Proxy]:
        ...

    async def get_active_proxies(self) -> List[Proxy]:
        ...

    async def update_proxy_health(self, proxy_id: int, healthy: bool, max_failures: int) -> None:
        ...

    async def create_crawl_result(self, result: CrawlResult) -> CrawlResult:
        ...


class CrawlStrategy(Protocol):
    """A way of executing a task. The engine never looks past this surface."""

    async def crawl(self, task: Task, control: Optional[CrawlControl] = None) -> None:
        ...

    async def stop(self, task_id: int) -> None:
        ...

    async def pause(self, task_id: int) -> None:
        ...

    async def resume(self, task_id: int) -> None:
        ...
