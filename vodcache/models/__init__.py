"""
Data Models Layer.

This package contains Pydantic models and dataclasses that define the core data
structures used throughout the application, such as configuration, tasks and
statistics.
"""

from .config import ServiceConfig
from .stats import BatchResult, RunStats
from .task import CachedEpisode, ContentDetail, EpisodeRef, Task

__all__ = [
    "BatchResult",
    "CachedEpisode",
    "ContentDetail",
    "EpisodeRef",
    "RunStats",
    "ServiceConfig",
    "Task",
]
