# utilities/__init__.py
"""Common utilities for chunkpipe."""

from .display import format_count, format_rate, format_elapsed, format_banner, abbreviate

__all__ = [
    "format_count",
    "format_rate",
    "format_elapsed",
    "format_banner",
    "abbreviate",
]
