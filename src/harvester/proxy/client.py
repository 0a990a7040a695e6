"""
HTTP client construction for direct and proxied egress.
"""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

import httpx

from harvester.config.config import ProxyConfig
from harvester.exceptions import UnsupportedProxySchemeError
from harvester.protocols import Proxy, ProxyType


def proxy_url(proxy: Proxy, include_credentials: bool = True) -> str:
    """
    Render ``scheme://[user:pass@]host:port`` for a proxy.

    Raises:
        UnsupportedProxySchemeError: for anything but http, https and socks5
    """
    scheme = proxy.type.value if isinstance(proxy.type, ProxyType) else str(proxy.type)
    if scheme not in {t.value for t in ProxyType}:
        raise UnsupportedProxySchemeError(scheme)
    auth = ""
    if include_credentials and proxy.username:
        auth = quote(proxy.username, safe="")
        if proxy.password:
            auth += ":" + quote(proxy.password, safe="")
        auth += "@"
    return f"{scheme}://{auth}{proxy.host}:{proxy.port}"


def client_limits(config: ProxyConfig) -> httpx.Limits:
    return httpx.Limits(
        max_connections=config.max_connections,
        max_keepalive_connections=config.max_keepalive_per_host,
        keepalive_expiry=config.keepalive_expiry,
    )


def build_client(
    proxy: Optional[Proxy],
    *,
    timeout: float,
    limits: Optional[httpx.Limits] = None,
    **kwargs: Any,
) -> httpx.AsyncClient:
    """
    Build an ``httpx.AsyncClient`` routed through ``proxy`` (or direct when None).

    HTTP(S) proxies carry their basic-auth credentials in the proxy URL; SOCKS5
    proxies get a dedicated transport that authenticates on connect.
    """
    limits = limits or httpx.Limits()
    client_timeout = httpx.Timeout(timeout)
    if proxy is None:
        return httpx.AsyncClient(timeout=client_timeout, limits=limits, **kwargs)

    if proxy.type == ProxyType.SOCKS5:
        auth = (proxy.username, proxy.password or "") if proxy.username else None
        transport = httpx.AsyncHTTPTransport(
            proxy=httpx.Proxy(proxy_url(proxy, include_credentials=False), auth=auth),
            limits=limits,
        )
        return httpx.AsyncClient(transport=transport, timeout=client_timeout, **kwargs)

    return httpx.AsyncClient(proxy=proxy_url(proxy), timeout=client_timeout, limits=limits, **kwargs)
