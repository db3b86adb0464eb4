"""
Helper functions for formatting sizes, durations and times for log lines and
CLI tables.
"""

from datetime import datetime

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_size(num_bytes: float) -> str:
    """Formats a byte count, e.g. '145.3 MB'."""
    if num_bytes <= 0:
        return "0 B"
    size = float(num_bytes)
    for unit in _SIZE_UNITS[:-1]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} {_SIZE_UNITS[-1]}"


def format_duration(seconds: float) -> str:
    """Formats elapsed seconds compactly, e.g. '1h 05m' or '42s'."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02}m"
    if minutes:
        return f"{minutes}m {secs:02}s"
    return f"{secs}s"


def format_timestamp(epoch_ms: int | None) -> str:
    """Formats an epoch-millisecond timestamp in local time, or '-' if absent."""
    if not epoch_ms:
        return "-"
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M")


def format_progress(downloaded: int, total: int | None) -> str:
    """Formats a download progress line such as '42.0% (12.3 MB)'."""
    if total:
        return f"{downloaded / total * 100:.1f}% ({format_size(downloaded)})"
    return format_size(downloaded)
