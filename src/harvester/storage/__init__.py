"""
Durable storage for tasks, proxies, results, products and crawler settings.
"""

from .repository import MAX_PRODUCT_PAGE, PAYLOAD_OVERRIDES_KEY, SQLiteRepository

__all__ = ["MAX_PRODUCT_PAGE", "PAYLOAD_OVERRIDES_KEY", "SQLiteRepository"]
