"""
Utilities for handling download paths, episode file names and URL parsing.
"""

import os
import re
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

from pathvalidate import sanitize_filename

DEFAULT_EXTENSION = "mp4"

_EXTENSION_PATTERN = re.compile(r"\.([^./\\]+)$")


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def resolve_download_path(base_path: str | Path, task_path: str | None) -> Path:
    """
    Resolves a task's destination against the configured base download path.

    Absolute paths inside the base are kept; absolute paths outside it are
    re-rooted under the base; relative paths are joined to it.
    """
    base = Path(base_path)
    if not task_path:
        return base

    candidate = Path(task_path)
    if candidate.is_absolute():
        if str(candidate).startswith(str(base)):
            return candidate
        return base / task_path.lstrip("/\\")
    return base / candidate


def relative_to_base(base_path: str | Path, file_path: str | Path) -> str:
    """Expresses a stored file relative to the base download path."""
    return os.path.relpath(str(file_path), str(base_path))


def sanitize_title(title: str) -> str:
    """Makes a task title safe to use as part of a file name."""
    cleaned = sanitize_filename(title.strip(), replacement_text="_")
    return cleaned or "untitled"


def episode_basename(title: str, episode_number: int) -> str:
    """Builds the extension-less output name of an episode."""
    return f"{sanitize_title(title)}_EP{episode_number:02}"


def extension_from_url(url: str) -> str | None:
    """Extracts the lower-cased file extension of a URL's path, if it has one."""
    path = urlsplit(url).path or url
    name = PurePosixPath(path).name
    if match := _EXTENSION_PATTERN.search(name):
        return match.group(1).lower()
    return None


def is_manifest_url(url: str) -> bool:
    """True if the URL points at an HLS playlist."""
    return ".m3u8" in url.lower()
