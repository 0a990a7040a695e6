"""
Exception hierarchy for the crawl orchestration engine.
"""

from __future__ import annotations

from typing import Optional


class HarvesterError(Exception):
    """Base class for all engine errors."""


class TaskNotFoundError(HarvesterError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"task {task_id} not found")
        self.task_id = task_id


class TaskAlreadyRunningError(HarvesterError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"task {task_id} is already running")
        self.task_id = task_id


class InvalidTransitionError(HarvesterError):
    """Raised when a lifecycle event is not allowed from the current status."""

    def __init__(self, task_id: int, current: str, event: str) -> None:
        super().__init__(f"task {task_id}: cannot {event} from status '{current}'")
        self.task_id = task_id
        self.current = current
        self.event = event


class NoProxyAvailableError(HarvesterError):
    def __init__(self) -> None:
        super().__init__("no proxies available")


class ProxyIndexError(HarvesterError, IndexError):
    def __init__(self, index: int, size: int) -> None:
        super().__init__(f"proxy index {index} out of range (pool size {size})")
        self.index = index
        self.size = size


class UnsupportedProxySchemeError(HarvesterError, ValueError):
    def __init__(self, scheme: str) -> None:
        super().__init__(f"unsupported proxy type: {scheme}")
        self.scheme = scheme


class PayloadError(HarvesterError):
    """The outbound query could not be built. Fatal for the run."""


class UpstreamStatusError(HarvesterError):
    """The upstream answered with a non-200 status."""

    def __init__(self, status_code: int, body: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(f"unexpected status code {status_code}: {body[:500]}")
        self.status_code = status_code
        self.body = body
        self.retry_after = retry_after


class ResponseDecodeError(HarvesterError):
    """A response body could not be decompressed."""


class StorageError(HarvesterError):
    """Repository level failure."""


class ProductNotFoundError(HarvesterError):
    def __init__(self, product_id: int) -> None:
        super().__init__(f"product {product_id} not found")
        self.product_id = product_id


class InvalidProductStatusError(HarvesterError, ValueError):
    def __init__(self, status: str) -> None:
        super().__init__(f"invalid product status: {status}")
        self.status = status
