from __future__ import annotations

from ..models.session_result import SessionResult

"""SUMMARY line rendering for one import session.

Format:
    SUMMARY rows=<n> errors=<n> remaining=<n> auto=<n> bulk=<n> manual=<n> patterns=<n> elapsed_sec=<x>

The "SUMMARY " label itself is added by the logging formatter; render_summary_line
returns the full line so it can be matched against the contract regex directly.
"""

__all__ = [
    "render_summary_line",
    "format_seconds",
]


def format_seconds(value: float) -> str:
    """0 -> "0", 2.0 -> "2", 0.0004 -> "0.0004" (never scientific notation)."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(round(value, 3))


def render_summary_line(result: SessionResult) -> str:
    """Render the SUMMARY line of a session.

    Examples:
        >>> from datetime import datetime, timezone
        >>> start = datetime(2024, 1, 5, 10, 0, 0, tzinfo=timezone.utc)
        >>> end = datetime(2024, 1, 5, 10, 0, 2, tzinfo=timezone.utc)
        >>> result = SessionResult(
        ...     total_rows=120, total_errors=14, remaining_errors=3, auto_applied=5,
        ...     bulk_applied=6, manual_applied=0, patterns=2,
        ...     start_time=start, end_time=end, elapsed_seconds=2.0,
        ... )
        >>> render_summary_line(result)
        'SUMMARY rows=120 errors=14 remaining=3 auto=5 bulk=6 manual=0 patterns=2 elapsed_sec=2'
    """
    return (
        f"SUMMARY rows={result.total_rows} "
        f"errors={result.total_errors} "
        f"remaining={result.remaining_errors} "
        f"auto={result.auto_applied} "
        f"bulk={result.bulk_applied} "
        f"manual={result.manual_applied} "
        f"patterns={result.patterns} "
        f"elapsed_sec={format_seconds(result.elapsed_seconds)}"
    )
