"""
Single-request crawl of a task URL.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Optional

import httpx
import structlog

from harvester.protocols import CrawlControl, CrawlResult, Task

from .fetcher import FetchedResponse, ProxiedFetcher
from .fingerprint import BrowserFingerprint

if TYPE_CHECKING:
    from harvester.protocols import Repository

logger = structlog.get_logger(__name__)


class ApiCrawler:
    """
    Sends one request to ``task.url`` and stores the response as a ``CrawlResult``.

    The task config may set ``method`` (default GET) and extra ``headers``,
    which win over the generated browser headers.
    """

    def __init__(
        self,
        repository: Repository,
        fetcher: ProxiedFetcher,
        fingerprint: Optional[BrowserFingerprint] = None,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.fingerprint = fingerprint or BrowserFingerprint()

    def build_headers(self, task: Task) -> httpx.Headers:
        headers = httpx.Headers(self.fingerprint.headers())
        headers.update(task.settings.headers or {})
        return headers

    async def crawl(self, task: Task, control: Optional[CrawlControl] = None) -> None:
        assert task.id is not None
        method = (task.settings.method or "GET").upper()
        if control is not None:
            await control.checkpoint()

        try:
            response = await self.fetcher.request(method, task.url, self.build_headers(task))
        except Exception as e:
            logger.error("API request failed", task_id=task.id, url=task.url, error=str(e))
            await self.repository.create_crawl_result(
                CrawlResult(task_id=task.id, url=task.url, method=method, error=str(e))
            )
            raise

        await self.repository.create_crawl_result(self.to_result(task, response))
        logger.info(
            "API request completed",
            task_id=task.id,
            url=task.url,
            status_code=response.status_code,
            response_time_ms=response.response_time_ms,
        )

    @staticmethod
    def to_result(task: Task, response: FetchedResponse) -> CrawlResult:
        assert task.id is not None
        return CrawlResult(
            task_id=task.id,
            url=response.url,
            method=response.method,
            status_code=response.status_code,
            headers=json.dumps(response.headers, sort_keys=True),
            body=response.text,
            response_time_ms=response.response_time_ms,
            proxy_used=response.proxy_used,
        )

    async def stop(self, task_id: int) -> None:
        return None

    async def pause(self, task_id: int) -> None:
        return None

    async def resume(self, task_id: int) -> None:
        return None
