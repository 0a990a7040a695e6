"""
Harvester - resumable, proxy-rotating crawl orchestration engine.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .engine import CrawlEngine, TaskStateMachine

__all__ = ["__version__", "Config", "CrawlEngine", "DependencyContainer", "TaskStateMachine"]
