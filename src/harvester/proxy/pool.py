"""
In-memory pool of active egress proxies.
"""

from __future__ import annotations

import random
import threading
from typing import TYPE_CHECKING, List, Optional

import structlog

from harvester.exceptions import NoProxyAvailableError, ProxyIndexError
from harvester.observability.metrics import METRICS
from harvester.protocols import Proxy

if TYPE_CHECKING:
    from harvester.protocols import Repository

logger = structlog.get_logger(__name__)


class ProxyPool:
    """
    Snapshot of the active proxies in the store.

    The lock only guards the list itself; ``load`` reads the store first and
    swaps the list afterwards, so no lock is held across I/O.
    """

    def __init__(self, repository: Repository, rng: Optional[random.Random] = None) -> None:
        self.repository = repository
        self._rng = rng if rng is not None else random.Random()
        self._proxies: List[Proxy] = []
        self._lock = threading.RLock()

    async def load(self) -> int:
        """Replace the pool with the store's active proxies. Returns the new size."""
        proxies = await self.repository.get_active_proxies()
        with self._lock:
            self._proxies = list(proxies)
            size = len(self._proxies)
        METRICS["proxy_pool_size"].set(size)
        logger.info("Proxy pool loaded", count=size)
        return size

    def get_random(self) -> Proxy:
        with self._lock:
            if not self._proxies:
                raise NoProxyAvailableError()
            return self._rng.choice(self._proxies).copy()

    def get(self, index: int) -> Proxy:
        with self._lock:
            if index < 0 or index >= len(self._proxies):
                raise ProxyIndexError(index, len(self._proxies))
            return self._proxies[index].copy()

    def get_all(self) -> List[Proxy]:
        with self._lock:
            return [proxy.copy() for proxy in self._proxies]

    def add(self, proxy: Proxy) -> None:
        with self._lock:
            self._proxies.append(proxy.copy())
            size = len(self._proxies)
        METRICS["proxy_pool_size"].set(size)

    def remove(self, proxy_id: int) -> bool:
        with self._lock:
            for i, proxy in enumerate(self._proxies):
                if proxy.id == proxy_id:
                    del self._proxies[i]
                    size = len(self._proxies)
                    break
            else:
                return False
        METRICS["proxy_pool_size"].set(size)
        return True

    def count(self) -> int:
        with self._lock:
            return len(self._proxies)

    def __len__(self) -> int:
        return self.count()
