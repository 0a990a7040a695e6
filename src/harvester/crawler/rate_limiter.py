"""
Domain-Scoped Token Bucket Rate Limiter

Every request consumes one token from a global bucket and, when the domain
has its own registered rate, one token from that domain's bucket as well.
Buckets start full and hold at most ``rate`` tokens, so the burst size equals
the configured requests per second.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import urlparse

import structlog

from harvester.observability.metrics import METRICS

logger = structlog.get_logger(__name__)


@dataclass
class TokenBucket:
    """Classic token bucket refilled continuously at ``rate`` tokens per second."""

    rate: float
    capacity: float = 0.0
    tokens: float = field(init=False)
    updated_at: float = field(init=False)
    _lock: asyncio.Lock = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError("rate must be positive")
        if self.capacity <= 0:
            self.capacity = max(1.0, self.rate)
        self.tokens = self.capacity
        self.updated_at = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.rate)
        self.updated_at = now

    async def acquire(self) -> float:
        """Take one token, sleeping until it is available. Returns the time waited."""
        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return waited
                deficit = (1.0 - self.tokens) / self.rate
                await asyncio.sleep(deficit)
                waited += deficit


class DomainRateLimiter:
    """
    Global plus per-domain request throttling.

    Features:
    - Global requests-per-second ceiling shared by every domain
    - Optional per-domain ceilings registered at runtime
    - Forced delays for domains that answered with Retry-After
    """

    def __init__(self, global_rps: float, domain_rates: Optional[Dict[str, float]] = None) -> None:
        self.global_rps = global_rps
        self._global = TokenBucket(rate=global_rps)
        self._domains: Dict[str, TokenBucket] = {}
        self._forced_delays: Dict[str, float] = {}  # domain -> monotonic end of forced delay

        for domain, rps in (domain_rates or {}).items():
            self.set_domain_rate(domain, rps)

        logger.info("Rate limiter initialized", global_rps=global_rps, domains=len(self._domains))

    @staticmethod
    def domain_of(url_or_domain: str) -> str:
        if "://" in url_or_domain:
            return (urlparse(url_or_domain).hostname or "").lower()
        return url_or_domain.lower()

    def set_domain_rate(self, domain: str, rps: float) -> None:
        """Register or replace the dedicated bucket for ``domain``."""
        domain = self.domain_of(domain)
        self._domains[domain] = TokenBucket(rate=rps)
        logger.debug("Domain rate registered", domain=domain, rps=rps)

    def domain_rate(self, domain: str) -> Optional[float]:
        bucket = self._domains.get(self.domain_of(domain))
        return bucket.rate if bucket else None

    def defer(self, domain: str, seconds: float) -> None:
        """Hold every request to ``domain`` for ``seconds``, e.g. after a 429 with Retry-After."""
        domain = self.domain_of(domain)
        end = time.monotonic() + max(0.0, seconds)
        self._forced_delays[domain] = max(end, self._forced_delays.get(domain, 0.0))
        logger.info("Server requested delay", domain=domain, seconds=seconds)

    async def wait(self, domain: str) -> float:
        """
        Block until both the global and the domain budget admit one request.

        Args:
            domain: Host name or full URL of the request

        Returns:
            Total time waited in seconds
        """
        domain = self.domain_of(domain)
        waited = 0.0

        forced_end = self._forced_delays.get(domain)
        if forced_end is not None:
            remaining = forced_end - time.monotonic()
            if remaining > 0:
                await asyncio.sleep(remaining)
                waited += remaining
            else:
                self._forced_delays.pop(domain, None)

        waited += await self._global.acquire()
        bucket = self._domains.get(domain)
        if bucket is not None:
            waited += await bucket.acquire()

        METRICS["rate_limit_wait"].observe(waited)
        return waited

    def get_stats(self) -> Dict[str, object]:
        return {
            "global_rps": self.global_rps,
            "domains": {domain: bucket.rate for domain, bucket in self._domains.items()},
            "forced_delays": len(self._forced_delays),
        }
