"""
Media Processing Layer.

This package is responsible for all media file operations: resolving HLS
playlists, fetching segments and whole files, and merging segments into a
playable file.
"""

from .downloader import SegmentFetcher
from .manifest import ManifestResolver
from .merger import MergePipeline
from .pool import BoundedPool, FetchJob, retry_async

__all__ = [
    "BoundedPool",
    "FetchJob",
    "ManifestResolver",
    "MergePipeline",
    "SegmentFetcher",
    "retry_async",
]
