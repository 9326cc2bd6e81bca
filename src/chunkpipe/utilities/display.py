# utilities/display.py
"""Common display formatting utilities for chunkpipe runs."""

__all__ = [
    "format_count",
    "format_rate",
    "format_elapsed",
    "format_banner",
    "abbreviate",
]


def format_count(count: int) -> str:
    """Format a count with K/M/B suffixes to 2 decimal places.

    Examples:
        >>> format_count(950)
        '950'
        >>> format_count(12_345)
        '12.35K'
        >>> format_count(2_000_000_000)
        '2.00B'
    """
    if count >= 1_000_000_000:
        return f"{count / 1_000_000_000:.2f}B"
    elif count >= 1_000_000:
        return f"{count / 1_000_000:.2f}M"
    elif count >= 1_000:
        return f"{count / 1_000:.2f}K"
    else:
        return str(count)


def format_rate(items_per_second: float) -> str:
    """Format a rate for display (e.g., '1.2k/s', '850/s')."""
    if items_per_second >= 1000:
        return f"{items_per_second / 1000:.1f}k/s"
    return f"{items_per_second:.0f}/s"


def format_elapsed(seconds: float) -> str:
    """Format elapsed seconds as '1h02m', '3m05s' or '42s'."""
    if seconds >= 3600:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h{minutes:02d}m"
    elif seconds >= 60:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m{secs:02d}s"
    else:
        return f"{seconds:.0f}s"


def format_banner(title: str, width: int = 100, style: str = "═") -> str:
    """Create a formatted banner with title and separator line.

    Examples:
        >>> print(format_banner("Phase 1", width=10, style="─"))
        Phase 1
        ──────────
    """
    return f"{title}\n{style * width}"


def abbreviate(s: str, width: int = 96) -> str:
    """Return s truncated with an ellipsis if it exceeds width."""
    return s if len(s) <= width else (s[: max(0, width - 1)] + "…")
