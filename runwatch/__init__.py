"""Runwatch: live monitoring of Azure DevOps pipeline runs."""

from .clients import get_client
from .config import load_config
from .contracts import Build, Pipeline, RunSnapshot, TimelineRecord
from .monitor import MonitoredEntity, RunMonitor
from .polling import PollController
from .retry import RetryDecision, RetryStrategy
from .timeline import TimelineIndex, classify

__version__ = "0.1.0"
__all__ = [
    "Build",
    "Pipeline",
    "RunSnapshot",
    "TimelineRecord",
    "RunMonitor",
    "MonitoredEntity",
    "PollController",
    "RetryDecision",
    "RetryStrategy",
    "TimelineIndex",
    "classify",
    "get_client",
    "load_config",
]
