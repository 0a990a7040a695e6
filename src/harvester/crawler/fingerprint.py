"""
Browser-like request fingerprints.

Provides a rotating set of realistic desktop browser headers so consecutive
requests do not share an identical signature.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Dict, List, Optional

DEFAULT_ACCEPT = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,"
    "image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7"
)


@dataclass(frozen=True)
class BrowserProfile:
    user_agent: str
    accept_language: str
    accept: str = DEFAULT_ACCEPT
    accept_encoding: str = "gzip, deflate, br"
    sec_fetch_site: str = "none"
    sec_fetch_mode: str = "navigate"
    sec_fetch_user: str = "?1"
    sec_fetch_dest: str = "document"

    def headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept-Language": self.accept_language,
            "Accept": self.accept,
            "Accept-Encoding": self.accept_encoding,
            "Connection": "keep-alive",
            "Upgrade-Insecure-Requests": "1",
            "Sec-Fetch-Site": self.sec_fetch_site,
            "Sec-Fetch-Mode": self.sec_fetch_mode,
            "Sec-Fetch-User": self.sec_fetch_user,
            "Sec-Fetch-Dest": self.sec_fetch_dest,
            "Cache-Control": "max-age=0",
            "DNT": "1",
        }


class BrowserFingerprint:
    """
    Generates randomized browser profiles.

    Features:
    - Current Chrome, Firefox, Edge and Safari desktop user agents
    - Rotating Accept-Language values
    - Injectable random source for reproducible tests
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

        self.user_agents: List[str] = [
            # Chrome
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            # Firefox
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0",
            "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
            # Edge
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
            # Safari
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
        ]

        self.accept_languages: List[str] = [
            "en-US,en;q=0.9",
            "en-GB,en;q=0.9",
            "en-US,en;q=0.9,es;q=0.8",
            "en-US,en;q=0.9,de;q=0.8",
            "en-US,en;q=0.9,fr;q=0.8",
        ]

    def generate(self) -> BrowserProfile:
        return BrowserProfile(
            user_agent=self._rng.choice(self.user_agents),
            accept_language=self._rng.choice(self.accept_languages),
        )

    def headers(self) -> Dict[str, str]:
        """Header set of a freshly generated profile."""
        return self.generate().headers()
