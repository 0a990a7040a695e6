"""
Shared fixtures for the Harvester test suite.

Everything runs against a temporary SQLite file and simulated upstreams; no
test touches the network.
"""

# Standard library imports
import asyncio
import time
from pathlib import Path
from typing import AsyncGenerator, Awaitable, Callable

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from harvester.config import Config, CrawlerConfig, MonitoringConfig, ProxyConfig, SearchApiConfig, StorageConfig
from harvester.crawler import DomainRateLimiter, SearchApiCrawler
from harvester.observability import EventHub
from harvester.proxy import ProxyManager
from harvester.recovery import RetryExecutor, RetryPolicy
from harvester.storage import SQLiteRepository
from tests.helpers import FakeSearchApi

SEARCH_URL = "https://api.test/es/prdsrch"

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel any asyncio task a test leaves behind (monitors, health loops,
    workers) so it cannot leak into the next test.
    """
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


# ============================================================================
# Configuration and storage
# ============================================================================


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Fast, offline configuration: no proxies, no jitter, no backoff sleeps."""
    return Config(
        crawler=CrawlerConfig(
            max_workers=2,
            request_timeout=5.0,
            rate_limit_per_second=1000.0,
            retry_max_attempts=3,
            retry_initial_delay=0.0,
            retry_max_delay=0.0,
        ),
        proxy=ProxyConfig(enabled=False, health_check_interval=3600.0, check_url="https://echo.test/ip"),
        search_api=SearchApiConfig(
            base_url=SEARCH_URL,
            page_size=100,
            batch_size=50,
            check_interval=3600.0,
            jitter_min=0.0,
            jitter_max=0.0,
            page_error_delay=0.0,
        ),
        storage=StorageConfig(db_path=tmp_path / "harvester.db", pool_size=2),
        monitoring=MonitoringConfig(log_level="DEBUG"),
    )


@pytest_asyncio.fixture
async def repository(test_config: Config) -> AsyncGenerator[SQLiteRepository, None]:
    repo = SQLiteRepository(test_config.storage)
    await repo.initialize()
    yield repo
    await repo.close()


# ============================================================================
# Crawl collaborators
# ============================================================================


@pytest.fixture
def search_api() -> FakeSearchApi:
    return FakeSearchApi(total=250)


@pytest.fixture
def retry_executor() -> RetryExecutor:
    return RetryExecutor(RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0))


@pytest.fixture
def rate_limiter() -> DomainRateLimiter:
    return DomainRateLimiter(global_rps=1000.0)


@pytest_asyncio.fixture
async def proxy_manager(test_config, repository, search_api) -> AsyncGenerator[ProxyManager, None]:
    manager = ProxyManager(test_config, repository, client_factory=search_api.client_factory)
    yield manager
    await manager.stop()


@pytest_asyncio.fixture
async def search_crawler(
    test_config, repository, proxy_manager, rate_limiter, retry_executor
) -> AsyncGenerator[SearchApiCrawler, None]:
    crawler = SearchApiCrawler(
        test_config,
        repository,
        proxy_manager,
        rate_limiter,
        retry_executor,
        sink=EventHub(),
    )
    yield crawler
    await crawler.stop_all_monitors()


# ============================================================================
# Utilities
# ============================================================================


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll an (optionally async) predicate until it holds or the timeout expires."""

    async def _wait(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
        deadline = time.monotonic() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            if time.monotonic() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait
