"""
Utility functions and classes for Swipe Analysis.
"""

from typing import Optional


class Colors:
    """ANSI color codes for terminal output."""

    HEADER = "\033[95m"
    OKBLUE = "\033[94m"
    OKGREEN = "\033[92m"
    WARNING = "\033[93m"
    FAIL = "\033[91m"
    ENDC = "\033[0m"
    BOLD = "\033[1m"


def format_rate(rate: Optional[float]) -> str:
    """
    Format a 0-1 rate as a percentage.

    Args:
        rate: Rate value, or None when it was undefined.

    Returns:
        Formatted string (e.g., "42.5%" or "n/a").
    """
    if rate is None:
        return "n/a"
    return f"{rate * 100:.1f}%"


def format_count(count: int) -> str:
    """
    Format a count with appropriate units.

    Args:
        count: Number of swipes, messages, etc.

    Returns:
        Formatted string (e.g., "999" or "1.2K").
    """
    if count < 1000:
        return str(count)
    elif count < 1_000_000:
        return f"{count / 1000:.1f}K"
    else:
        return f"{count / 1_000_000:.1f}M"
