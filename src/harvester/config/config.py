"""
Configuration management for Harvester using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class CrawlerConfig(BaseModel):
    """Worker, politeness and retry settings shared by every crawl strategy."""

    max_workers: int = Field(default=10, ge=1, description="Number of workers in the generic task pool.")
    request_timeout: float = Field(default=30.0, gt=0, description="HTTP request timeout in seconds.")
    rate_limit_per_second: float = Field(default=5.0, gt=0, description="Global outbound requests per second.")
    domain_rate_limits: Dict[str, float] = Field(
        default_factory=dict,
        description="Per-domain requests per second, overriding the global rate for that domain.",
    )
    retry_max_attempts: int = Field(default=3, ge=1, description="Maximum attempts per retried operation.")
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff multiplier.")
    retry_initial_delay: float = Field(default=1.0, ge=0, description="Delay before the second attempt, in seconds.")
    retry_max_delay: float = Field(default=30.0, ge=0, description="Upper bound for a single backoff sleep.")

    @field_validator("domain_rate_limits")
    @classmethod
    def positive_domain_rates(cls, v: Dict[str, float]) -> Dict[str, float]:
        for domain, rate in v.items():
            if rate <= 0:
                raise ValueError(f"rate for domain '{domain}' must be positive")
        return {domain.lower(): rate for domain, rate in v.items()}


class ProxyConfig(BaseModel):
    """Egress proxy rotation and health checking."""

    enabled: bool = Field(default=True, description="Route outbound requests through pooled proxies.")
    health_check_interval: float = Field(default=300.0, gt=0, description="Seconds between health check sweeps.")
    max_failures: int = Field(default=3, ge=1, description="Consecutive failures before a proxy is deactivated.")
    check_url: str = Field(default="https://httpbin.org/ip", description="Echo endpoint used to health-check proxies.")
    check_timeout: float = Field(default=10.0, gt=0, description="Timeout for a single proxy health check.")
    max_connections: int = Field(default=100, ge=1)
    max_keepalive_per_host: int = Field(default=10, ge=0)
    keepalive_expiry: float = Field(default=90.0, ge=0, description="Idle connection timeout in seconds.")


def _default_api_headers() -> Dict[str, str]:
    return {
        "accept": "application/json, text/plain, */*",
        "content-type": "application/json;charset=UTF-8",
        "origin": "https://www.embroiderydesigns.com",
        "referer": "https://www.embroiderydesigns.com/stockdesign/productlistings",
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "same-origin",
    }


class SearchApiConfig(BaseModel):
    """Paginated search API target."""

    base_url: str = Field(default="https://www.embroiderydesigns.com/es/prdsrch")
    auth_token: Optional[str] = Field(default=None, description="Sent as the Authorization header when set.")
    cookies: Optional[str] = Field(default=None, description="Raw Cookie header value.")
    api_headers: Dict[str, str] = Field(default_factory=_default_api_headers)
    page_size: int = Field(default=120, ge=1)
    batch_size: int = Field(default=50, ge=1, description="Records per persistence batch.")
    check_interval: float = Field(default=6 * 3600.0, gt=0, description="Seconds between incremental checks.")
    jitter_min: float = Field(default=1.0, ge=0)
    jitter_max: float = Field(default=3.0, ge=0)
    page_error_delay: float = Field(default=2.0, ge=0, description="Pause after a failed or malformed page.")

    @model_validator(mode="after")
    def check_jitter_bounds(self) -> "SearchApiConfig":
        if self.jitter_max < self.jitter_min:
            raise ValueError("jitter_max must be greater than or equal to jitter_min")
        return self


class StorageConfig(BaseModel):
    """Configuration for the SQLite store."""

    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".harvester" / "harvester.db",
        description="SQLite database file path",
    )
    pool_size: int = Field(default=5, ge=1, description="Size of the connection pool.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for higher concurrency.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class MonitoringConfig(BaseModel):
    """Logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus metrics exporter.")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"invalid log level: {v}")
        return v.upper()


# --- Root Configuration Model ---


class Config(BaseSettings):
    project_name: str = "Harvester"
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    search_api: SearchApiConfig = Field(default_factory=SearchApiConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="HARVESTER_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("harvester.yaml", "harvester.yml", "config.yaml"):
        path = current_dir / name
        if path.is_file():
            return path
    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load from an explicit file, a discovered file, or the environment alone."""
    if path is not None:
        return Config.from_yaml(path)
    found = find_config_file()
    if found is not None:
        return Config.from_yaml(found)
    return Config()
