"""
Defines and manages Prometheus metrics for the application.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from harvester.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Importing the module twice (test collection, reloads) must not fail with a
# duplicate registration error, so existing collectors are reused.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "pages_fetched": Counter(
            "harvester_pages_fetched_total",
            "Search result pages fetched successfully",
        ),
        "page_errors": Counter(
            "harvester_page_errors_total",
            "Pages that failed to fetch or parse",
            ["kind"],
        ),
        "records_saved": Counter(
            "harvester_records_saved_total",
            "Records persisted by the paginated crawler",
            ["result"],
        ),
        "retry_attempts": Counter(
            "harvester_retry_attempts_total",
            "Failed attempts that were followed by a backoff sleep",
        ),
        "proxy_failures": Counter(
            "harvester_proxy_failures_total",
            "Proxy failures reported by crawlers",
        ),
        "proxy_pool_size": Gauge(
            "harvester_proxy_pool_size",
            "Number of active proxies currently in the pool",
        ),
        "rate_limit_wait": Histogram(
            "harvester_rate_limit_wait_seconds",
            "Time spent waiting on the rate limiter",
            buckets=(0.0, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        ),
        "task_transitions": Counter(
            "harvester_task_transitions_total",
            "Task status transitions",
            ["status"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def start_metrics_server(config: MonitoringConfig) -> bool:
    """Start the Prometheus exporter when a port is configured."""
    if not config.prometheus_port:
        return False
    start_http_server(config.prometheus_port)
    logger.info("Prometheus metrics server started", port=config.prometheus_port)
    return True
