"""Configuration models for Harvester."""

from .config import (
    Config,
    CrawlerConfig,
    MonitoringConfig,
    ProxyConfig,
    SearchApiConfig,
    StorageConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "Config",
    "CrawlerConfig",
    "MonitoringConfig",
    "ProxyConfig",
    "SearchApiConfig",
    "StorageConfig",
    "find_config_file",
    "load_config",
]
