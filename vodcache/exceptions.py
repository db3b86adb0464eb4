"""
Defines custom exceptions for the application to allow for more specific error handling.
"""

from pathlib import Path


class VodCacheError(Exception):
    """Base exception for all application-specific errors."""


class ManifestFetchError(VodCacheError):
    """Raised when a manifest is unreachable or answers with a non-2xx status."""


class EmptyManifestError(VodCacheError):
    """Raised when a manifest resolves to no fetchable resources."""


class SegmentFetchError(VodCacheError):
    """Raised for a transient failure while fetching a single segment."""


class MergeError(VodCacheError):
    """
    Raised when transcode, stream copy and the raw fallback have all failed.

    The localized manifest is left in place so the downloaded segments remain
    usable and the episode can be resumed.
    """

    def __init__(self, message: str, manifest_path: Path | None = None):
        super().__init__(message)
        self.manifest_path = manifest_path


class DownloadTimeoutError(VodCacheError, TimeoutError):
    """Raised when an operation exceeds its configured duration."""


class ProcessLaunchError(VodCacheError):
    """Raised when a task worker process cannot be started."""


class DetailFetchError(VodCacheError):
    """Raised when the content detail for a task cannot be retrieved."""


class ConfigurationError(VodCacheError):
    """Raised for issues related to configuration loading or validation."""


class TaskNotFoundError(VodCacheError):
    """Raised when a task id does not exist in the task store."""
