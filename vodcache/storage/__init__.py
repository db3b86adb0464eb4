"""
Storage Layer.

This package handles all data persistence: the configuration file, the task
store, the cache index of downloaded episodes and the running markers.
"""

from .cache_index import CacheIndex
from .config_manager import ConfigManager
from .markers import RunningMarkers
from .task_store import TaskStore

__all__ = ["CacheIndex", "ConfigManager", "RunningMarkers", "TaskStore"]
