"""
Liveness checks of pooled proxies.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable, Dict, List

import httpx
import structlog

from harvester.config.config import ProxyConfig
from harvester.exceptions import UnsupportedProxySchemeError
from harvester.protocols import Proxy

from .client import build_client

if TYPE_CHECKING:
    from harvester.protocols import Repository

logger = structlog.get_logger(__name__)


class HealthChecker:
    """Checks proxies against an echo endpoint and records the outcome."""

    def __init__(
        self,
        repository: Repository,
        config: ProxyConfig,
        client_factory: Callable[..., httpx.AsyncClient] = build_client,
        concurrency: int = 10,
    ) -> None:
        self.repository = repository
        self.config = config
        self._client_factory = client_factory
        self._semaphore = asyncio.Semaphore(concurrency)

    async def check_proxy(self, proxy: Proxy) -> bool:
        """
        True iff a GET through ``proxy`` answers 200 within the check timeout.

        Transport failures and timeouts count as unhealthy. An unsupported
        proxy scheme is a configuration error and raises.
        """
        client = self._client_factory(proxy, timeout=self.config.check_timeout)
        async with client:
            try:
                response = await client.get(self.config.check_url)
            except httpx.HTTPError as e:
                logger.debug("Proxy health check failed", proxy=proxy.address, error=str(e))
                return False
        return response.status_code == 200

    async def _check_and_record(self, proxy: Proxy) -> bool:
        async with self._semaphore:
            try:
                healthy = await self.check_proxy(proxy)
            except UnsupportedProxySchemeError as e:
                logger.warning("Proxy has an unsupported scheme", proxy_id=proxy.id, error=str(e))
                healthy = False

        if proxy.id is None:
            return healthy
        try:
            await self.repository.update_proxy_health(proxy.id, healthy, self.config.max_failures)
            stored = None if healthy else await self.repository.get_proxy(proxy.id)
        except Exception as e:
            logger.error("Failed to update proxy health", proxy_id=proxy.id, error=str(e))
            return healthy

        # Failure reports from crawls may have moved the count since the snapshot
        if stored is not None and proxy.is_active and not stored.is_active:
            logger.warning(
                "Proxy exceeded max failures, deactivating",
                proxy_id=proxy.id,
                proxy=proxy.address,
                failures=stored.failure_count,
            )
        return healthy

    async def check_all(self, proxies: List[Proxy]) -> Dict[int, bool]:
        """Check every proxy and persist its health. Returns ``{proxy_id: healthy}``."""
        outcomes = await asyncio.gather(*(self._check_and_record(proxy) for proxy in proxies))
        results = {proxy.id: healthy for proxy, healthy in zip(proxies, outcomes) if proxy.id is not None}
        logger.info(
            "Proxy health check complete",
            checked=len(proxies),
            healthy=sum(1 for ok in outcomes if ok),
        )
        return results
