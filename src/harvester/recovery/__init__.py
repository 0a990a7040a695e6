"""
Error recovery primitives for Harvester.
"""

from .retry import RetryExecutor, RetryPolicy

__all__ = ["RetryExecutor", "RetryPolicy"]
