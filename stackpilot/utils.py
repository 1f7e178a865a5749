"""Utility functions for stackpilot."""

from pathlib import Path


def format_size(size_bytes: float) -> str:
    """Format bytes into human-readable string.

    Examples:
        >>> format_size(0)
        '0 B'
        >>> format_size(1024)
        '1.0 KB'
        >>> format_size(1536870912)
        '1.4 GB'
    """
    if size_bytes == 0:
        return "0 B"

    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} {unit}"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format seconds as a short human string.

    Examples:
        >>> format_duration(4.25)
        '4.2s'
        >>> format_duration(75)
        '1m 15s'
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


def expand_path(path: str) -> Path:
    """Expand ``~`` in a configured path."""
    return Path(path).expanduser()
