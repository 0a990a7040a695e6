"""
Tests for the resumable paginated search crawler and its incremental monitor.
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from harvester.crawler import SearchApiCrawler
from harvester.exceptions import PayloadError, StorageError, UpstreamStatusError
from harvester.observability.metrics import METRICS
from harvester.protocols import Proxy, Task, TaskType
from harvester.proxy import ProxyManager, ProxyPool
from tests.helpers import StaticUpstream, metric_delta

SEARCH_URL = "https://api.test/es/prdsrch"


async def make_task(repository, **config) -> Task:
    config.setdefault("crawler_type", "embroidery_api")
    return await repository.create_task(
        Task(name="designs", url=SEARCH_URL, type=TaskType.API, config=json.dumps(config))
    )


class FirstChoice:
    """Deterministic stand-in for ``random.Random`` picking the head of the pool."""

    def choice(self, seq):
        return seq[0]


@pytest.mark.unit
class TestFullCrawl:
    @pytest.mark.asyncio
    async def test_fresh_crawl_walks_every_page(self, search_crawler, search_api, repository):
        task = await make_task(repository)

        result = await search_crawler.crawl_all(task)

        assert search_api.page_offsets == [0, 100, 200]
        assert result.total_available == 250
        assert result.stats.total_processed == 250
        assert result.stats.success_count == 250
        assert result.stats.error_count == 0
        assert await repository.count_products() == 250

    @pytest.mark.asyncio
    async def test_resumes_from_persisted_cursor(self, search_crawler, search_api, repository):
        task = await make_task(repository, last_from=100)

        result = await search_crawler.crawl_all(task)

        assert search_api.page_offsets == [100, 200]
        assert result.stats.start_offset == 100
        assert result.stats.total_processed == 250
        assert result.stats.processed_this_run == 150
        assert await repository.count_products() == 150

    @pytest.mark.asyncio
    async def test_completion_clears_cursor_and_keeps_other_settings(self, search_crawler, repository):
        task = await make_task(repository, last_from=200, note="keep me")

        await search_crawler.crawl_all(task)

        stored = json.loads((await repository.get_task(task.id)).config)
        assert "last_from" not in stored
        assert stored["crawler_type"] == "embroidery_api"
        assert stored["note"] == "keep me"

    @pytest.mark.asyncio
    async def test_completion_starts_monitoring(self, search_crawler, repository):
        task = await make_task(repository)

        await search_crawler.crawl_all(task)

        assert search_crawler.is_monitoring(task.id)
        assert search_crawler.start_monitoring(task, 250) is False

    @pytest.mark.asyncio
    async def test_interrupted_crawl_resumes_at_the_unfinished_page(self, search_crawler, search_api, repository):
        task = await make_task(repository)
        search_api.block_at = 100

        running = asyncio.create_task(search_crawler.crawl_all(task))
        await asyncio.wait_for(search_api.blocked.wait(), timeout=3)
        running.cancel()
        with pytest.raises(asyncio.CancelledError):
            await running

        stored = await repository.get_task(task.id)
        assert stored.settings.last_from == 100
        assert await repository.count_products() == 100
        assert not search_crawler.is_monitoring(task.id)

        await search_crawler.crawl_all(stored)

        assert search_api.page_offsets == [0, 100, 100, 200]
        assert await repository.count_products() == 250

    @pytest.mark.asyncio
    async def test_short_last_page_ends_pagination(self, search_crawler, search_api, repository):
        search_api.total = 100
        task = await make_task(repository)

        result = await search_crawler.crawl_all(task)

        assert search_api.page_offsets == [0]
        assert result.pages == 1

    @pytest.mark.asyncio
    async def test_empty_result_set(self, search_crawler, search_api, repository):
        search_api.total = 0
        task = await make_task(repository)

        result = await search_crawler.crawl_all(task)

        assert search_api.page_offsets == [0]
        assert result.total_available == 0
        assert await repository.count_products() == 0

    @pytest.mark.asyncio
    async def test_records_are_upserted_not_duplicated(self, search_crawler, search_api, repository):
        first = await make_task(repository)
        second = await make_task(repository)

        await search_crawler.crawl_all(first)
        await search_crawler.crawl_all(second)

        assert await repository.count_products() == 250
        product = await repository.get_product("doc-7")
        assert product.item_id == "ITEM00007"
        assert product.in_stock is True


@pytest.mark.unit
class TestPageErrors:
    @pytest.mark.asyncio
    async def test_malformed_page_is_counted_and_retried(self, search_crawler, search_api, repository):
        search_api.malformed_at = {100}
        task = await make_task(repository)

        with metric_delta(METRICS["page_errors"].labels(kind="parse")):
            result = await search_crawler.crawl_all(task)

        assert search_api.page_offsets == [0, 100, 100, 200]
        assert result.stats.error_count == 1
        assert "Parse failed at from=100" in result.stats.errors[0]
        assert await repository.count_products() == 250

    @pytest.mark.asyncio
    async def test_error_status_is_counted_and_retried(self, search_crawler, search_api, repository):
        search_api.error_at = {0}
        task = await make_task(repository)

        with metric_delta(METRICS["page_errors"].labels(kind="request")):
            result = await search_crawler.crawl_all(task)

        assert search_api.page_offsets == [0, 0, 100, 200]
        assert result.stats.error_count == 1
        assert "Request failed at from=0" in result.stats.errors[0]

    @pytest.mark.asyncio
    async def test_unserializable_overrides_are_fatal(self, search_crawler, search_api, repository):
        await repository.update_payload_overrides({"query": {"boost": float("nan")}})
        task = await make_task(repository)

        with pytest.raises(PayloadError):
            await search_crawler.crawl_all(task)

        assert search_api.payloads == []
        assert not search_crawler.is_monitoring(task.id)


@pytest.mark.unit
class TestRequests:
    @pytest.mark.asyncio
    async def test_overrides_are_merged_but_pagination_is_forced(self, search_crawler, search_api, repository):
        await repository.update_payload_overrides({"from": 9999, "size": 5, "sort": [{"rating": "desc"}]})
        task = await make_task(repository)

        await search_crawler.crawl_all(task)

        first = search_api.payloads[0]
        assert first["from"] == 0
        assert first["size"] == 100
        assert first["sort"] == [{"rating": "desc"}]
        assert first["query"]["bool"]["must"][0] == {"term": {"definitionName": "StockDesign"}}

    @pytest.mark.asyncio
    async def test_api_headers_win_over_fingerprint(self, test_config, search_crawler, search_api, repository):
        test_config.search_api.api_headers = {"user-agent": "CatalogueSync/1.0", "origin": "https://shop.test"}
        test_config.search_api.auth_token = "Bearer abc"
        task = await make_task(repository)

        await search_crawler.crawl_all(task)

        headers = search_api.headers[0]
        assert headers["user-agent"] == "CatalogueSync/1.0"
        assert headers["origin"] == "https://shop.test"
        assert headers["authorization"] == "Bearer abc"
        assert "gzip" in headers["accept-encoding"]

    @pytest.mark.asyncio
    async def test_too_many_requests_defers_the_host(self, test_config, repository, rate_limiter, retry_executor):
        upstream = StaticUpstream(429, b"slow down", headers={"retry-after": "7"})
        manager = ProxyManager(test_config, repository, client_factory=upstream.client_factory)
        crawler = SearchApiCrawler(test_config, repository, manager, rate_limiter, retry_executor)
        try:
            with pytest.raises(UpstreamStatusError) as exc_info:
                await crawler.fetch(b"{}")
        finally:
            await manager.stop()

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 7.0
        assert rate_limiter.get_stats()["forced_delays"] == 1

    @pytest.mark.asyncio
    async def test_failing_proxy_is_reported_and_rotated(
        self, test_config, repository, search_api, rate_limiter, retry_executor
    ):
        test_config.proxy.enabled = True
        bad = await repository.create_proxy(Proxy(host="10.0.0.1", port=8001))
        good = await repository.create_proxy(Proxy(host="10.0.0.2", port=8002))
        search_api.failing_proxies.add(bad.id)

        manager = ProxyManager(
            test_config,
            repository,
            client_factory=search_api.client_factory,
            pool=ProxyPool(repository, rng=FirstChoice()),
        )
        await manager.reload()
        crawler = SearchApiCrawler(test_config, repository, manager, rate_limiter, retry_executor)
        task = await make_task(repository)
        try:
            with metric_delta(METRICS["proxy_failures"]):
                await crawler.crawl_all(task)
        finally:
            await crawler.stop_all_monitors()
            await manager.stop()

        assert search_api.proxies_seen[:2] == [bad.id, good.id]
        assert set(search_api.proxies_seen[2:]) == {good.id}
        assert (await repository.get_proxy(bad.id)).failure_count == 1
        assert await repository.count_products() == 250


@pytest.mark.unit
class TestIncremental:
    @pytest.mark.asyncio
    async def test_only_new_records_are_fetched(self, search_crawler, search_api, repository):
        task = await make_task(repository)
        await search_crawler.crawl_all(task)
        search_api.total = 300

        new_total = await search_crawler.check_for_new_records(task, 250)

        assert new_total == 300
        assert search_api.page_offsets == [0, 100, 200, 250]
        assert await repository.count_products() == 300
        assert "last_from" not in json.loads((await repository.get_task(task.id)).config)

    @pytest.mark.asyncio
    async def test_no_growth_fetches_nothing(self, search_crawler, search_api, repository):
        task = await make_task(repository)
        await search_crawler.crawl_all(task)

        assert await search_crawler.check_for_new_records(task, 250) == 250
        assert search_api.page_offsets == [0, 100, 200]
        # the count request asks for a single record
        assert search_api.payloads[-1]["size"] == 1

    @pytest.mark.asyncio
    async def test_monitor_picks_up_new_records(self, test_config, search_crawler, search_api, repository, wait_until):
        test_config.search_api.check_interval = 0.05
        task = await make_task(repository)
        events = search_crawler.sink.subscribe()
        await search_crawler.crawl_all(task)

        search_api.total = 320

        async def caught_up():
            return await repository.count_products() == 320

        await wait_until(caught_up)
        assert search_crawler.is_monitoring(task.id)

        messages = []
        while not events.empty():
            messages.append(events.get_nowait().message)
        assert "Found 70 new products (previous total: 250, current: 320)" in messages

    @pytest.mark.asyncio
    async def test_stop_cancels_the_monitor(self, search_crawler, repository):
        task = await make_task(repository)
        await search_crawler.crawl_all(task)
        assert search_crawler.is_monitoring(task.id)

        await search_crawler.stop(task.id)

        assert not search_crawler.is_monitoring(task.id)
        assert search_crawler.stop_monitoring(task.id) is False


@pytest.mark.unit
class TestBestEffortPersistence:
    @pytest.mark.asyncio
    async def test_cursor_write_failures_do_not_abort_the_crawl(self, search_crawler, search_api, repository):
        task = await make_task(repository)

        with patch.object(
            repository, "update_task_config", AsyncMock(side_effect=StorageError("database is locked"))
        ) as update:
            result = await search_crawler.crawl_all(task)

        # one cursor write per page plus the final clear
        assert update.await_count == 4
        assert result.stats.total_processed == 250
        assert await repository.count_products() == 250

    @pytest.mark.asyncio
    async def test_failed_record_save_is_counted(self, search_crawler, repository):
        task = await make_task(repository)
        real_upsert = repository.upsert_product

        async def flaky_upsert(product):
            if product.elastic_id == "doc-3":
                raise StorageError("constraint failed")
            await real_upsert(product)

        with patch.object(repository, "upsert_product", AsyncMock(side_effect=flaky_upsert)):
            result = await search_crawler.crawl_all(task)

        assert result.stats.success_count == 249
        assert result.stats.error_count == 1
        assert result.stats.total_processed == 250
        assert await repository.get_product("doc-3") is None

    @pytest.mark.asyncio
    async def test_unreadable_overrides_fall_back_to_defaults(self, search_crawler, search_api, repository):
        task = await make_task(repository)

        with patch.object(repository, "get_payload_overrides", AsyncMock(side_effect=StorageError("corrupt"))):
            await search_crawler.crawl_all(task)

        assert search_api.payloads[0]["sort"] == [{"saleRank": "desc"}, {"rating": "desc"}]
