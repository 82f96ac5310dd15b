"""
Surge - Error Hierarchy

Two kinds of failure live here:

- Observation errors (``ErrorKind``): how a single HTTP call failed. These
  are never raised past a worker; they end up as the message of a failed
  ``RequestSample``.
- Control errors (``SurgeError`` and subclasses): raised by the tool itself.
  Only ``ConfigurationError`` is fatal to a run.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

MAX_ERROR_BODY_CHARS = 300


class ErrorKind(str, Enum):
    """Classification of a failed request observation."""

    TIMEOUT = "timeout"          # Call exceeded its fixed timeout
    NETWORK = "network"          # Transport-level failure
    PROTOCOL = "protocol"        # Non-2xx response
    UNEXPECTED = "unexpected"    # Anything else


def describe_failure(
    kind: ErrorKind,
    *,
    status_code: int = 0,
    reason: str | None = None,
    body: str | None = None,
    exc: BaseException | None = None,
) -> str:
    """
    Build the human-readable message stored on a failed sample.

    Args:
        kind: Failure classification
        status_code: HTTP status for protocol errors
        reason: HTTP reason phrase for protocol errors
        body: Response body for protocol errors (truncated)
        exc: Originating exception for network/unexpected errors

    Returns:
        Message suitable for grouping in the error summary
    """
    if kind == ErrorKind.TIMEOUT:
        return "Request timeout"
    if kind == ErrorKind.NETWORK:
        return f"Network error: {exc}"
    if kind == ErrorKind.PROTOCOL:
        if body is None or not body.strip():
            return f"HTTP {status_code} {reason or ''}".rstrip()
        if len(body) > MAX_ERROR_BODY_CHARS:
            body = body[:MAX_ERROR_BODY_CHARS] + "..."
        return f"HTTP {status_code}: {body}"
    return f"Error: {exc}"


class SurgeError(Exception):
    """Base exception for errors raised by the load generator."""

    def __init__(self, message: str, *, code: str = "SURGE_ERROR") -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ConfigurationError(SurgeError):
    """Invalid or missing configuration. Aborts the run before any phase."""

    def __init__(self, message: str, *, setting: str | None = None) -> None:
        super().__init__(message, code="CONFIG_ERROR")
        self.setting = setting

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["setting"] = self.setting
        return data


class WorkloadError(SurgeError):
    """A workload step could not continue."""

    def __init__(self, message: str, *, step: str | None = None) -> None:
        super().__init__(message, code="WORKLOAD_ERROR")
        self.step = step


class DataStoreError(SurgeError):
    """The backing store cleanup or lookup failed."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message, code="DATASTORE_ERROR")
        self.operation = operation
