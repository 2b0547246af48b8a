"""Error taxonomy for daemon calls and user edits."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mihomot.models import FailureReason


class ControlError(Exception):
    """Base error for a failed control API call.

    `user_message` is the short line shown in the status bar.
    """

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class ControlConnectionError(ControlError):
    """Daemon refused the connection or is unreachable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, f"Failed to connect: {message}")


class ControlTimeoutError(ControlError):
    """Request did not complete within the client timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, f"Request timed out: {message}")


class HttpStatusError(ControlError):
    """Daemon answered with a non-2xx status."""

    def __init__(self, status_code: int, reason: str = "") -> None:
        status = f"{status_code} {reason}".strip()
        super().__init__(f"HTTP {status}", f"Server returned error: {status}")
        self.status_code = status_code


class DeserializationError(ControlError):
    """Response body was not the expected JSON shape."""

    def __init__(self, message: str) -> None:
        super().__init__(message, f"Failed to parse response: {message}")


class ProbeError(Exception):
    """A latency measurement failed; `reason` classifies the failure."""

    def __init__(self, reason: FailureReason, detail: str = "") -> None:
        super().__init__(detail or reason.value)
        self.reason = reason
        self.detail = detail


class InvalidEditError(ValueError):
    """User input for a setting could not be accepted."""
