"""
Crawl strategies and the request plumbing they share.
"""

from .api_crawler import ApiCrawler
from .fetcher import FetchedResponse, ProxiedFetcher
from .fingerprint import BrowserFingerprint
from .payload import build_search_payload, deep_merge
from .rate_limiter import DomainRateLimiter, TokenBucket
from .search_crawler import CRAWLER_TYPE, SearchApiCrawler
from .web_crawler import HttpPageFetcher, PageCrawler, PageFetcher, WebCrawler
from .worker_pool import WorkerPool

__all__ = [
    "ApiCrawler",
    "BrowserFingerprint",
    "CRAWLER_TYPE",
    "DomainRateLimiter",
    "FetchedResponse",
    "HttpPageFetcher",
    "PageCrawler",
    "PageFetcher",
    "ProxiedFetcher",
    "SearchApiCrawler",
    "TokenBucket",
    "WebCrawler",
    "WorkerPool",
    "build_search_payload",
    "deep_merge",
]
