"""
Outbound requests through the proxy manager, rate limiter and retry executor.
"""

from __future__ import annotations

import functools
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Mapping, Optional
from urllib.parse import urlparse

import httpx
import structlog

from harvester.exceptions import NoProxyAvailableError
from harvester.protocols import Proxy

from .encoding import decode_body

if TYPE_CHECKING:
    from harvester.proxy.manager import ProxyManager
    from harvester.recovery.retry import RetryExecutor

    from .rate_limiter import DomainRateLimiter

logger = structlog.get_logger(__name__)


@dataclass
class FetchedResponse:
    url: str
    method: str
    status_code: int
    headers: Dict[str, str]
    content: bytes
    response_time_ms: int
    proxy_used: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @property
    def retry_after(self) -> Optional[float]:
        value = self.headers.get("retry-after")
        if not value:
            return None
        try:
            return max(0.0, float(value))
        except ValueError:
            return None


@dataclass
class _Route:
    """The proxy and client a request is currently bound to."""

    proxy: Optional[Proxy]
    client: httpx.AsyncClient


@dataclass
class _RawResponse:
    status_code: int
    headers: httpx.Headers
    content: bytes


class ProxiedFetcher:
    """
    Issues one logical request, rotating proxies between failed attempts.

    The body is read raw and decompressed here according to Content-Encoding,
    so callers always get plain bytes.
    """

    def __init__(
        self,
        proxy_manager: ProxyManager,
        rate_limiter: DomainRateLimiter,
        retry: RetryExecutor,
        proxy_enabled: bool = True,
    ) -> None:
        self.proxy_manager = proxy_manager
        self.rate_limiter = rate_limiter
        self.retry = retry
        self.proxy_enabled = proxy_enabled

    def acquire_proxy(self) -> Optional[Proxy]:
        if not self.proxy_enabled:
            return None
        try:
            return self.proxy_manager.get_proxy()
        except NoProxyAvailableError as e:
            logger.warning("Failed to get proxy, continuing without proxy", error=str(e))
            return None

    async def _rotate(self, route: _Route, error: Exception) -> None:
        """Blame the route's proxy for a transport failure and switch to another one."""
        if route.proxy is None:
            return
        logger.warning("Request through proxy failed, rotating", proxy=route.proxy.address, error=str(error))
        try:
            await self.proxy_manager.report_failure(route.proxy)
        except Exception as e:
            logger.error("Failed to report proxy failure", proxy_id=route.proxy.id, error=str(e))
        previous = route.client
        route.proxy = self.acquire_proxy()
        route.client = self.proxy_manager.acquire_client(route.proxy)
        await self.proxy_manager.release_client(previous)

    async def _send(
        self, route: _Route, method: str, url: str, headers: httpx.Headers, content: Optional[bytes]
    ) -> _RawResponse:
        try:
            request = route.client.build_request(method, url, content=content, headers=headers)
            response = await route.client.send(request, stream=True)
            try:
                body = b"".join([chunk async for chunk in response.aiter_raw()])
            finally:
                await response.aclose()
        except httpx.TransportError as e:
            await self._rotate(route, e)
            raise
        return _RawResponse(status_code=response.status_code, headers=response.headers, content=body)

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        content: Optional[bytes] = None,
    ) -> FetchedResponse:
        """
        Rate-limit on the URL's host, then send with retries.

        Raises:
            httpx.TransportError: every attempt failed at the transport level
            ResponseDecodeError: the body could not be decompressed
        """
        started = time.monotonic()
        proxy = self.acquire_proxy()
        route = _Route(proxy=proxy, client=self.proxy_manager.acquire_client(proxy))
        request_headers = httpx.Headers(headers or {})

        try:
            await self.rate_limiter.wait(urlparse(url).hostname or url)
            raw = await self.retry.run(functools.partial(self._send, route, method, url, request_headers, content))
        finally:
            await self.proxy_manager.release_client(route.client)

        body = decode_body(raw.content, raw.headers.get("content-encoding"))
        return FetchedResponse(
            url=url,
            method=method,
            status_code=raw.status_code,
            headers={k.lower(): v for k, v in raw.headers.items()},
            content=body,
            response_time_ms=int((time.monotonic() - started) * 1000),
            proxy_used=f"{route.proxy.type.value}://{route.proxy.address}" if route.proxy else None,
        )
