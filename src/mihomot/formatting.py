"""Formatting utilities for consistent output across CLI and TUI."""

from mihomot.models import Failed, FailureReason, LatencyResult, Pending, Success, Testing

_KB = 1024
_MB = 1024 * 1024

_FAILURE_LABELS = {
    FailureReason.TIMEOUT: "timeout",
    FailureReason.CONNECT_ERROR: "error",
    FailureReason.OTHER: "failed",
}


def format_speed(byte_count: int) -> str:
    """Format a per-interval byte count for the traffic panel.

    Args:
        byte_count: Bytes moved during the last reporting interval

    Returns:
        Formatted amount:
        - Under 1 KiB: "512 B"
        - Under 1 MiB: "12.3 KB"
        - Otherwise: "4.6 MB"
    """
    if byte_count < _KB:
        return f"{byte_count} B"
    if byte_count < _MB:
        return f"{byte_count / _KB:.1f} KB"
    return f"{byte_count / _MB:.1f} MB"


def format_latency(result: LatencyResult) -> str:
    """Short label for a latency cell: "-", "...", "123ms", "timeout", "error"."""
    if isinstance(result, Success):
        return f"{result.ms}ms"
    if isinstance(result, Testing):
        return "..."
    if isinstance(result, Failed):
        return _FAILURE_LABELS[result.reason]
    return "-"


def format_reachability(result: LatencyResult) -> str:
    """Label drawn on the reachability gauge."""
    if isinstance(result, Success):
        return f"{result.ms} ms"
    if isinstance(result, Testing):
        return "Testing..."
    if isinstance(result, Failed):
        return f"Err: {result.detail or _FAILURE_LABELS[result.reason]}"
    return "Idle"


def latency_gauge_percent(result: LatencyResult) -> int:
    """Fill level (0-100) of the reachability gauge.

    A success fills min(100, 1000 / max(ms, 10) * 100) percent, a failure
    fills the gauge (drawn in the error color), idle and testing leave it empty.
    """
    if isinstance(result, Success):
        return int(min(100.0, 1000 / max(result.ms, 10) * 100))
    if isinstance(result, Failed):
        return 100
    return 0


def is_settled(result: LatencyResult) -> bool:
    """Whether a result is final (success or failure)."""
    return not isinstance(result, (Pending, Testing))
