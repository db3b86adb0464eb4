"""
vodcache: scheduled, resumable downloads of multi-episode video into a local cache.
"""

__version__ = "1.0.0"
