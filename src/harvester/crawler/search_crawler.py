"""
Resumable paginated crawler for the product search API.

One task drives strictly sequential pages: every page persists the resume
cursor, posts the merged query through the proxy manager, the rate limiter and
the retry executor, and upserts each returned record. When pagination is
exhausted the cursor is cleared and a low-frequency monitor starts polling the
result count, re-crawling only the records beyond the last known total.
"""

from __future__ import annotations

import asyncio
import functools
import random
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import ValidationError

from harvester.config.config import Config
from harvester.exceptions import PayloadError, UpstreamStatusError
from harvester.observability.events import NullSink
from harvester.observability.metrics import METRICS
from harvester.protocols import CrawlControl, CrawlStats, Task, TaskConfig

from .fetcher import ProxiedFetcher
from .fingerprint import BrowserFingerprint
from .payload import build_search_payload, encode_payload
from .records import SearchHit, SearchResponse, product_from_hit

if TYPE_CHECKING:
    from harvester.protocols import LogSink, Repository
    from harvester.proxy.manager import ProxyManager
    from harvester.recovery.retry import RetryExecutor

    from .rate_limiter import DomainRateLimiter

logger = structlog.get_logger(__name__)

CRAWLER_TYPE = "embroidery_api"


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "unknown"
    seconds = int(round(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


@dataclass
class PaginationResult:
    stats: CrawlStats
    total_available: Optional[int] = None
    pages: int = 0
    offsets: List[int] = field(default_factory=list)


class SearchApiCrawler:
    """
    Crawl strategy for tasks whose config selects ``crawler_type: embroidery_api``.
    """

    def __init__(
        self,
        config: Config,
        repository: Repository,
        proxy_manager: ProxyManager,
        rate_limiter: DomainRateLimiter,
        retry: RetryExecutor,
        sink: Optional[LogSink] = None,
        fingerprint: Optional[BrowserFingerprint] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.api = config.search_api
        self.repository = repository
        self.proxy_manager = proxy_manager
        self.rate_limiter = rate_limiter
        self.retry = retry
        self.sink: LogSink = sink or NullSink()
        self.fingerprint = fingerprint or BrowserFingerprint()
        self._rng = rng or random.Random()
        self._host = urlparse(self.api.base_url).hostname or self.api.base_url
        self.fetcher = ProxiedFetcher(proxy_manager, rate_limiter, retry, proxy_enabled=config.proxy.enabled)

        self._monitors: Dict[int, asyncio.Task[None]] = {}
        self._monitors_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Strategy surface
    # ------------------------------------------------------------------

    async def crawl(self, task: Task, control: Optional[CrawlControl] = None) -> None:
        await self.crawl_all(task, control)

    async def stop(self, task_id: int) -> None:
        self.stop_monitoring(task_id)

    async def pause(self, task_id: int) -> None:
        # The page loop honors the execution's pause gate; nothing else to hold.
        return None

    async def resume(self, task_id: int) -> None:
        return None

    # ------------------------------------------------------------------
    # Narration
    # ------------------------------------------------------------------

    def _narrate(self, task_id: Optional[int], level: str, message: str, **fields: Any) -> None:
        getattr(logger, level)(message, task_id=task_id, **fields)
        if task_id is None:
            return
        try:
            self.sink.publish(task_id, level, message)
        except Exception as e:
            logger.debug("Log sink publish failed", task_id=task_id, error=str(e))

    # ------------------------------------------------------------------
    # Full crawl
    # ------------------------------------------------------------------

    async def crawl_all(self, task: Task, control: Optional[CrawlControl] = None) -> PaginationResult:
        """Crawl every page, resuming from the persisted cursor, then start monitoring."""
        assert task.id is not None
        self._narrate(task.id, "info", "Starting search API crawl")

        settings = task.settings
        overrides = await self._load_overrides()
        start_from = settings.resume_from
        if start_from:
            self._narrate(task.id, "info", f"Resuming from position: {start_from}")

        result = await self._paginate(task, start_from, overrides, control, settings=settings)

        await self._clear_cursor(task, settings)

        stats = result.stats
        self._narrate(
            task.id,
            "info",
            f"Crawl completed: {stats.total_processed} processed, {stats.success_count} saved, "
            f"{stats.error_count} errors in {format_duration(stats.elapsed)}",
            total_processed=stats.total_processed,
            success=stats.success_count,
            errors=stats.error_count,
        )

        last_total = result.total_available if result.total_available is not None else stats.total_processed
        self.start_monitoring(task, last_total)
        return result

    async def incremental_crawl(self, task: Task, from_: int) -> PaginationResult:
        """Crawl only the records beyond offset ``from_``. The resume cursor is left alone."""
        self._narrate(task.id, "info", f"Incremental crawl: starting from position {from_}")
        overrides = await self._load_overrides()
        result = await self._paginate(task, from_, overrides, control=None, settings=None)
        self._narrate(
            task.id,
            "info",
            f"Incremental crawl: completed, {result.stats.processed_this_run} new products processed",
        )
        return result

    async def _load_overrides(self) -> Dict[str, Any]:
        try:
            return await self.repository.get_payload_overrides()
        except Exception as e:
            logger.warning("Failed to load payload overrides, falling back to defaults", error=str(e))
            return {}

    async def _save_cursor(self, task: Task, settings: TaskConfig, offset: int) -> None:
        """Best-effort persistence of the resume cursor."""
        assert task.id is not None
        task.config = settings.with_cursor(offset).to_json()
        try:
            await self.repository.update_task_config(task.id, task.config)
        except Exception as e:
            logger.warning("Failed to persist resume cursor", task_id=task.id, offset=offset, error=str(e))

    async def _clear_cursor(self, task: Task, settings: TaskConfig) -> None:
        assert task.id is not None
        task.config = settings.without_cursor().to_json()
        try:
            await self.repository.update_task_config(task.id, task.config)
        except Exception as e:
            logger.warning("Failed to clear resume cursor", task_id=task.id, error=str(e))

    async def _paginate(
        self,
        task: Task,
        from_: int,
        overrides: Mapping[str, Any],
        control: Optional[CrawlControl],
        settings: Optional[TaskConfig],
    ) -> PaginationResult:
        """
        The page loop. ``settings`` is given when the run owns the resume cursor.

        Raises:
            PayloadError: the query could not be serialized
        """
        page_size = self.api.page_size
        stats = CrawlStats(start_offset=from_)
        result = PaginationResult(stats=stats)

        while True:
            if control is not None:
                await control.checkpoint()

            if settings is not None:
                await self._save_cursor(task, settings, from_)

            payload = encode_payload(build_search_payload(from_, page_size, overrides))

            try:
                response = SearchResponse.model_validate_json(await self.fetch(payload))
            except PayloadError:
                raise
            except ValidationError as e:
                self._page_failed(task, stats, from_, "parse", e)
                await asyncio.sleep(self.api.page_error_delay)
                continue
            except Exception as e:
                self._page_failed(task, stats, from_, "request", e)
                await asyncio.sleep(self.api.page_error_delay)
                continue

            result.pages += 1
            result.offsets.append(from_)
            METRICS["pages_fetched"].inc()

            if result.total_available is None:
                result.total_available = response.total
                self._narrate(task.id, "info", f"Total products available: {response.total}", total=response.total)

            hits = response.records
            if not hits:
                self._narrate(task.id, "info", "No more products to fetch")
                break

            await self._save_records(task, hits, stats)
            stats.advance(len(hits))

            total = result.total_available
            remaining = max(0, total - stats.total_processed)
            eta = stats.estimate_remaining(remaining)
            self._narrate(
                task.id,
                "info",
                f"Page {result.pages}: {len(hits)} products processed "
                f"(Total: {stats.total_processed}/{total} Remaining: {remaining}) - "
                f"Estimated time remaining: {format_duration(eta)}",
                offset=from_,
            )

            if stats.total_processed >= total or len(hits) < page_size:
                break

            from_ += page_size
            await self.rate_limiter.wait(self._host)
            await asyncio.sleep(self._rng.uniform(self.api.jitter_min, self.api.jitter_max))

        return result

    def _page_failed(self, task: Task, stats: CrawlStats, from_: int, kind: str, error: Exception) -> None:
        METRICS["page_errors"].labels(kind=kind).inc()
        message = f"Request failed at from={from_}: {error}" if kind == "request" else f"Parse failed at from={from_}: {error}"
        stats.record_error(message)
        self._narrate(task.id, "error", message, offset=from_, kind=kind)

    async def _save_records(self, task: Task, hits: List[SearchHit], stats: CrawlStats) -> None:
        batch_size = self.api.batch_size
        for start in range(0, len(hits), batch_size):
            batch = hits[start : start + batch_size]
            saved = 0
            for hit in batch:
                product = product_from_hit(hit.id, hit.source)
                try:
                    await self.retry.run(functools.partial(self.repository.upsert_product, product))
                except Exception as e:
                    stats.record_error(f"Failed to save product {hit.id}: {e}")
                    METRICS["records_saved"].labels(result="error").inc()
                    logger.error("Failed to save product", task_id=task.id, elastic_id=hit.id, error=str(e))
                    continue
                saved += 1
                stats.record_success()
                METRICS["records_saved"].labels(result="ok").inc()
            logger.debug("Saved product batch", task_id=task.id, batch_start=start, saved=saved, size=len(batch))

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def build_headers(self) -> httpx.Headers:
        """Fingerprint headers overlaid with the API headers, which win on conflict."""
        headers = httpx.Headers(self.fingerprint.headers())
        for name, value in self.api.api_headers.items():
            headers[name] = value
        if self.api.auth_token:
            headers["authorization"] = self.api.auth_token
        if "accept-encoding" not in headers:
            headers["accept-encoding"] = "gzip, deflate, br"
        if self.api.cookies:
            headers["cookie"] = self.api.cookies
        return headers

    async def fetch(self, payload: bytes) -> bytes:
        """
        POST one query and return the decoded body.

        Raises:
            UpstreamStatusError: the API answered with anything but 200
        """
        response = await self.fetcher.request("POST", self.api.base_url, self.build_headers(), payload)
        if response.status_code != 200:
            retry_after = response.retry_after
            if response.status_code == 429 and retry_after:
                self.rate_limiter.defer(self._host, retry_after)
            raise UpstreamStatusError(response.status_code, response.text, retry_after)
        return response.content

    # ------------------------------------------------------------------
    # Incremental monitoring
    # ------------------------------------------------------------------

    async def fetch_total(self) -> int:
        """Current result count, from a single-record query."""
        overrides = await self._load_overrides()
        payload = encode_payload(build_search_payload(0, 1, overrides))
        return SearchResponse.model_validate_json(await self.fetch(payload)).total

    async def check_for_new_records(self, task: Task, last_total: int) -> int:
        """Re-crawl the delta if the result count grew. Returns the new known total."""
        current = await self.fetch_total()
        if current > last_total:
            self._narrate(
                task.id,
                "info",
                f"Found {current - last_total} new products (previous total: {last_total}, current: {current})",
            )
            await self.incremental_crawl(task, last_total)
        else:
            self._narrate(task.id, "info", f"No new products found. Current total: {current}")
        return current

    def start_monitoring(self, task: Task, last_total: int) -> bool:
        """Start the periodic check for ``task``. No-op when one is already running."""
        assert task.id is not None
        with self._monitors_lock:
            existing = self._monitors.get(task.id)
            if existing is not None and not existing.done():
                return False
            self._monitors[task.id] = asyncio.create_task(
                self._monitor(task, last_total), name=f"search-monitor-{task.id}"
            )
        self._narrate(
            task.id,
            "info",
            f"Periodic monitoring started, checking every {format_duration(self.api.check_interval)}",
        )
        return True

    def stop_monitoring(self, task_id: int) -> bool:
        with self._monitors_lock:
            monitor = self._monitors.pop(task_id, None)
        if monitor is None:
            return False
        monitor.cancel()
        logger.info("Periodic monitoring stopped", task_id=task_id)
        return True

    def is_monitoring(self, task_id: int) -> bool:
        with self._monitors_lock:
            monitor = self._monitors.get(task_id)
        return monitor is not None and not monitor.done()

    async def stop_all_monitors(self) -> None:
        with self._monitors_lock:
            monitors = list(self._monitors.values())
            self._monitors.clear()
        for monitor in monitors:
            monitor.cancel()
        await asyncio.gather(*monitors, return_exceptions=True)

    async def _monitor(self, task: Task, last_total: int) -> None:
        try:
            while True:
                await asyncio.sleep(self.api.check_interval)
                try:
                    last_total = await self.check_for_new_records(task, last_total)
                except Exception as e:
                    self._narrate(task.id, "error", f"Incremental check failed: {e}")
        finally:
            with self._monitors_lock:
                if self._monitors.get(task.id) is asyncio.current_task():
                    del self._monitors[task.id]

