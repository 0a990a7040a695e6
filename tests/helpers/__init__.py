from .fake_upstream import FakeSearchApi, StaticUpstream, make_hit, respond
from .metric_delta import histogram_observes, metric_delta
from .strategies import ControlledStrategy

__all__ = [
    "ControlledStrategy",
    "FakeSearchApi",
    "StaticUpstream",
    "histogram_observes",
    "make_hit",
    "metric_delta",
    "respond",
]
