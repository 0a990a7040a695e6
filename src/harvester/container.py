"""
Dependency injection container wiring the engine and its collaborators.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx
import structlog

from harvester.config import Config, load_config
from harvester.crawler import (
    CRAWLER_TYPE,
    ApiCrawler,
    BrowserFingerprint,
    DomainRateLimiter,
    HttpPageFetcher,
    PageCrawler,
    ProxiedFetcher,
    SearchApiCrawler,
    WebCrawler,
    WorkerPool,
)
from harvester.engine import CrawlEngine
from harvester.observability import EventHub, start_metrics_server
from harvester.proxy import ProxyManager, build_client
from harvester.recovery import RetryExecutor, RetryPolicy
from harvester.storage import SQLiteRepository


class DependencyContainer:
    """
    Builds every collaborator from one ``Config`` and owns their lifecycle.

    With ``start_services=False`` only storage is opened, which is what the
    administrative CLI commands need; background work (proxy health checks,
    the worker pool, the metrics exporter) is left off.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Config] = None,
        client_factory: Callable[..., httpx.AsyncClient] = build_client,
        start_services: bool = True,
    ) -> None:
        self.config_path = config_path
        self.config = config
        self.client_factory = client_factory
        self.start_services = start_services
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.is_running = False

        self.repository: Optional[SQLiteRepository] = None
        self.events = EventHub()
        self.proxy_manager: Optional[ProxyManager] = None
        self.rate_limiter: Optional[DomainRateLimiter] = None
        self.retry: Optional[RetryExecutor] = None
        self.search_crawler: Optional[SearchApiCrawler] = None
        self.web_crawler: Optional[WebCrawler] = None
        self.pool: Optional[WorkerPool] = None
        self.engine: Optional[CrawlEngine] = None

    async def initialize(self) -> None:
        if self.config is None:
            self.config = load_config(self.config_path)
        config = self.config

        repository = SQLiteRepository(config.storage)
        await repository.initialize()
        self.repository = repository

        self.proxy_manager = ProxyManager(config, repository, client_factory=self.client_factory)
        self.rate_limiter = DomainRateLimiter(config.crawler.rate_limit_per_second, config.crawler.domain_rate_limits)
        self.retry = RetryExecutor(RetryPolicy.from_config(config.crawler))
        fingerprint = BrowserFingerprint()
        fetcher = ProxiedFetcher(self.proxy_manager, self.rate_limiter, self.retry, proxy_enabled=config.proxy.enabled)

        self.search_crawler = SearchApiCrawler(
            config,
            repository,
            self.proxy_manager,
            self.rate_limiter,
            self.retry,
            sink=self.events,
            fingerprint=fingerprint,
        )
        api_crawler = ApiCrawler(repository, fetcher, fingerprint)
        self.web_crawler = WebCrawler(api_crawler, PageCrawler(repository, HttpPageFetcher(fetcher, fingerprint)))

        self.engine = CrawlEngine(
            repository,
            self.web_crawler,
            strategies={CRAWLER_TYPE: self.search_crawler},
            sink=self.events,
        )
        self.pool = WorkerPool(config.crawler.max_workers, self.engine.pooled_runner())
        self.engine.pool = self.pool

        if self.start_services:
            await self.proxy_manager.start()
            self.pool.start()
            start_metrics_server(config.monitoring)

        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            config_path=str(self.config_path) if self.config_path else "default",
            services=self.start_services,
        )

    async def shutdown(self) -> None:
        """Tear down in reverse order of construction."""
        if not self.is_running:
            return
        self.logger.info("Shutting down dependency container")

        if self.engine is not None:
            try:
                await self.engine.shutdown()
            except Exception as e:
                self.logger.error("Error shutting down engine", error=str(e))
        if self.proxy_manager is not None:
            try:
                await self.proxy_manager.stop()
            except Exception as e:
                self.logger.error("Error stopping proxy manager", error=str(e))
        if self.repository is not None:
            await self.repository.close()

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def __aenter__(self) -> DependencyContainer:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    def get_health_status(self) -> Dict[str, Any]:
        active = self.engine.active_tasks() if self.engine else []
        # Pooled tasks still waiting in the queue are active but not yet on a worker
        on_workers = [task_id for task_id in active if self.pool is not None and self.pool.is_running(task_id)]
        return {
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "proxy_pool_size": len(self.proxy_manager.pool) if self.proxy_manager else 0,
            "open_http_clients": self.proxy_manager.open_clients if self.proxy_manager else 0,
            "active_tasks": active,
            "tasks_on_workers": on_workers,
            "rate_limits": self.rate_limiter.get_stats() if self.rate_limiter else {},
            "event_subscribers": self.events.subscriber_count,
        }
