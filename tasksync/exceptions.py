"""
Exception classes for tasksync.
"""

from __future__ import annotations


class TaskSyncError(Exception):
    """Base exception for all tasksync errors."""


class ConfigurationError(TaskSyncError):
    """Raised when configuration is invalid or missing."""


class GatewayError(TaskSyncError):
    """Raised when the remote calendar rejects a request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientGatewayError(GatewayError):
    """Network failure, timeout, rate limiting or a 5xx response."""


class NotFoundError(GatewayError):
    """The remote event is gone (404/410)."""


class AuthorizationError(GatewayError):
    """Credentials were rejected (401/403). Never retried automatically."""


class StructuralBatchError(GatewayError):
    """A batch request was malformed or mixed destination calendars."""


class DecisionNotFoundError(TaskSyncError):
    """No pending decision exists with the given id."""


def classify_status(status: int | None) -> str:
    if status is None or status == 0:
        return "transient"
    if 200 <= status < 300:
        return "success"
    if status in (404, 410):
        return "drift"
    if status in (401, 403):
        return "authorization"
    if status == 429 or status >= 500:
        return "transient"
    return "permanent"


def error_for_status(status: int, message: str) -> GatewayError:
    kind = classify_status(status)
    if kind == "drift":
        return NotFoundError(message, status)
    if kind == "authorization":
        return AuthorizationError(message, status)
    if kind == "transient":
        return TransientGatewayError(message, status)
    return GatewayError(message, status)
