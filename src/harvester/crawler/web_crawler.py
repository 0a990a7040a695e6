"""
Dispatching strategy for generic tasks.

``api`` tasks go to the ``ApiCrawler``; ``web`` tasks are rendered through a
pluggable ``PageFetcher`` and stored the same way.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Optional, Protocol

import httpx
import structlog

from harvester.protocols import CrawlControl, CrawlResult, Task, TaskType

from .api_crawler import ApiCrawler
from .fetcher import FetchedResponse, ProxiedFetcher
from .fingerprint import BrowserFingerprint

if TYPE_CHECKING:
    from harvester.protocols import Repository

logger = structlog.get_logger(__name__)


class PageFetcher(Protocol):
    async def fetch(self, task: Task) -> FetchedResponse:
        ...


class HttpPageFetcher:
    """Plain GET with a browser-like header set."""

    def __init__(self, fetcher: ProxiedFetcher, fingerprint: Optional[BrowserFingerprint] = None) -> None:
        self.fetcher = fetcher
        self.fingerprint = fingerprint or BrowserFingerprint()

    async def fetch(self, task: Task) -> FetchedResponse:
        headers = httpx.Headers(self.fingerprint.headers())
        headers.update(task.settings.headers or {})
        return await self.fetcher.request("GET", task.url, headers)


class PageCrawler:
    def __init__(self, repository: Repository, page_fetcher: PageFetcher) -> None:
        self.repository = repository
        self.page_fetcher = page_fetcher

    async def crawl(self, task: Task, control: Optional[CrawlControl] = None) -> None:
        assert task.id is not None
        if control is not None:
            await control.checkpoint()

        started = time.monotonic()
        try:
            response = await self.page_fetcher.fetch(task)
        except Exception as e:
            logger.error("Page fetch failed", task_id=task.id, url=task.url, error=str(e))
            await self.repository.create_crawl_result(
                CrawlResult(
                    task_id=task.id,
                    url=task.url,
                    response_time_ms=int((time.monotonic() - started) * 1000),
                    error=str(e),
                )
            )
            raise

        await self.repository.create_crawl_result(ApiCrawler.to_result(task, response))
        logger.info("Page crawled", task_id=task.id, url=task.url, status_code=response.status_code)


class WebCrawler:
    """Routes a task to the API or page strategy by its type."""

    def __init__(self, api_crawler: ApiCrawler, page_crawler: PageCrawler) -> None:
        self.api_crawler = api_crawler
        self.page_crawler = page_crawler

    async def crawl(self, task: Task, control: Optional[CrawlControl] = None) -> None:
        if task.type == TaskType.API:
            await self.api_crawler.crawl(task, control)
        else:
            await self.page_crawler.crawl(task, control)

    async def stop(self, task_id: int) -> None:
        await self.api_crawler.stop(task_id)

    async def pause(self, task_id: int) -> None:
        await self.api_crawler.pause(task_id)

    async def resume(self, task_id: int) -> None:
        await self.api_crawler.resume(task_id)
