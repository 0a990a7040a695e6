"""
Proxy rotation: pool, background health checks and per-proxy HTTP clients.
"""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, Callable, Dict, Optional

import httpx
import structlog

from harvester.config.config import Config
from harvester.observability.metrics import METRICS
from harvester.protocols import Proxy

from .client import build_client, client_limits
from .health_checker import HealthChecker
from .pool import ProxyPool

if TYPE_CHECKING:
    from harvester.protocols import Repository

logger = structlog.get_logger(__name__)

_DIRECT = "direct"


class ProxyManager:
    """
    Hands out proxies and connection-pooled clients to crawlers.

    Clients are cached per proxy so consecutive pages reuse connections.
    Requests lease a client with ``acquire_client`` and hand it back with
    ``release_client``. A failure report retires the proxy's client, which
    is closed once its last lease is released.
    """

    def __init__(
        self,
        config: Config,
        repository: Repository,
        client_factory: Callable[..., httpx.AsyncClient] = build_client,
        pool: Optional[ProxyPool] = None,
        health_checker: Optional[HealthChecker] = None,
    ) -> None:
        self.config = config.proxy
        self.request_timeout = config.crawler.request_timeout
        self.repository = repository
        self.pool = pool if pool is not None else ProxyPool(repository)
        if health_checker is None:
            health_checker = HealthChecker(repository, config.proxy, client_factory=client_factory)
        self.health_checker = health_checker
        self._client_factory = client_factory
        self._limits = client_limits(config.proxy)
        self._clients: Dict[str, httpx.AsyncClient] = {}
        # Keyed by id(client); both maps hold a reference so ids stay unique
        self._leases: Dict[int, int] = {}
        self._retired: Dict[int, httpx.AsyncClient] = {}
        self._clients_lock = threading.Lock()
        self._health_task: Optional[asyncio.Task[None]] = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def open_clients(self) -> int:
        """Clients built by the manager and not closed yet, cached or retired."""
        with self._clients_lock:
            return len(self._clients) + len(self._retired)

    async def start(self) -> None:
        """Load the pool and launch the health check loop."""
        if not self.enabled:
            logger.info("Proxy support disabled")
            return
        await self.pool.load()
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop(), name="proxy-health-check")
        logger.info("Proxy manager started", interval=self.config.health_check_interval)

    async def stop(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        with self._clients_lock:
            clients = list(self._clients.values()) + list(self._retired.values())
            self._clients.clear()
            self._retired.clear()
            self._leases.clear()
        for client in clients:
            await client.aclose()
        logger.info("Proxy manager stopped")

    async def _health_loop(self) -> None:
        while True:
            try:
                await self.run_health_check()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Proxy health check sweep failed", error=str(e))
            await asyncio.sleep(self.config.health_check_interval)

    async def run_health_check(self) -> Dict[int, bool]:
        """Check a snapshot of the pool, then reload it from the store."""
        snapshot = self.pool.get_all()
        results: Dict[int, bool] = {}
        if snapshot:
            results = await self.health_checker.check_all(snapshot)
        await self.reload()
        return results

    def get_proxy(self) -> Optional[Proxy]:
        """
        A random active proxy, or None when proxying is disabled.

        Raises:
            NoProxyAvailableError: proxying is enabled but the pool is empty
        """
        if not self.enabled:
            return None
        return self.pool.get_random()

    @staticmethod
    def _client_key(proxy: Optional[Proxy]) -> str:
        if proxy is None:
            return _DIRECT
        if proxy.id is not None:
            return f"proxy:{proxy.id}"
        return f"{proxy.type.value}://{proxy.address}"

    def _cached_client(self, proxy: Optional[Proxy]) -> httpx.AsyncClient:
        # Caller holds _clients_lock
        key = self._client_key(proxy)
        client = self._clients.get(key)
        if client is None or client.is_closed:
            client = self._client_factory(proxy, timeout=self.request_timeout, limits=self._limits)
            self._clients[key] = client
        return client

    def get_http_client(self, proxy: Optional[Proxy]) -> httpx.AsyncClient:
        """
        The pooled client routed through ``proxy`` (direct when None).

        The client is owned by the manager and closed when the proxy fails.
        Use ``acquire_client`` for a request that may outlive a failure report.
        """
        with self._clients_lock:
            return self._cached_client(proxy)

    def acquire_client(self, proxy: Optional[Proxy]) -> httpx.AsyncClient:
        """Lease the pooled client for ``proxy``; pair with ``release_client``."""
        with self._clients_lock:
            client = self._cached_client(proxy)
            self._leases[id(client)] = self._leases.get(id(client), 0) + 1
            return client

    async def release_client(self, client: httpx.AsyncClient) -> None:
        with self._clients_lock:
            key = id(client)
            holders = self._leases.get(key, 0) - 1
            if holders > 0:
                self._leases[key] = holders
                return
            self._leases.pop(key, None)
            retired = self._retired.pop(key, None)
        if retired is not None:
            await retired.aclose()

    async def _retire_client(self, proxy: Proxy) -> None:
        with self._clients_lock:
            client = self._clients.pop(self._client_key(proxy), None)
            if client is None:
                return
            if self._leases.get(id(client)):
                self._retired[id(client)] = client
                return
        await client.aclose()

    async def report_failure(self, proxy: Optional[Proxy]) -> None:
        """Mark ``proxy`` unhealthy in the store, retire its client and refresh the pool."""
        if proxy is None or proxy.id is None:
            return
        METRICS["proxy_failures"].inc()
        logger.warning("Proxy failure reported", proxy_id=proxy.id, proxy=proxy.address)
        await self._retire_client(proxy)
        await self.repository.update_proxy_health(proxy.id, False, self.config.max_failures)
        await self.reload()

    async def reload(self) -> int:
        return await self.pool.load()
