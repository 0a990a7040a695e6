"""
Logging, metrics and task event narration.
"""

from .events import EventHub, NullSink, TaskEvent
from .logging import configure_logging
from .metrics import METRICS, start_metrics_server

__all__ = ["EventHub", "NullSink", "TaskEvent", "configure_logging", "METRICS", "start_metrics_server"]
