"""
Egress proxy pool, health checking and rotation.
"""

from .client import build_client, proxy_url
from .health_checker import HealthChecker
from .manager import ProxyManager
from .pool import ProxyPool

__all__ = ["build_client", "proxy_url", "HealthChecker", "ProxyManager", "ProxyPool"]
