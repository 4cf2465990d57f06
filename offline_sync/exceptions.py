"""
Error taxonomy for the offline sync layer.

Every error that crosses a component boundary is one of these. Each
carries its ``kind`` plus the original HTTP status or transport code so
callers can render precise messaging.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .transport.http import Response


class SyncClientError(Exception):
    """Base exception for all offline sync errors."""

    kind = "sync_error"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.status = status
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        """Serialize for outcome events and structured logs."""
        return {
            "kind": self.kind,
            "message": self.message,
            "status": self.status,
            "code": self.code,
            "details": self.details,
        }


class TransientNetworkError(SyncClientError):
    """Network failure, timeout or 5xx. Retried internally."""

    kind = "transient_network"


class PermanentRequestError(SyncClientError):
    """4xx validation-class failure, or a transient failure that ran out of retries."""

    kind = "permanent_request"

    @classmethod
    def reclassified(cls, error: SyncClientError, attempts: int) -> PermanentRequestError:
        """Wrap an exhausted transient error as a permanent one."""
        details = dict(error.details)
        details["reclassified_from"] = error.kind
        details["attempts"] = attempts
        return cls(
            f"Retry budget exhausted after {attempts} attempts: {error.message}",
            details,
            status=error.status,
            code=error.code,
        )


class AuthExpiredError(SyncClientError):
    """The server rejected the credential (401)."""

    kind = "auth_expired"


class RefreshFailedError(SyncClientError):
    """Credential refresh failed. The session has been invalidated."""

    kind = "refresh_failed"

    def __init__(self, message: str, cause: Exception | None = None, status: int | None = None):
        details: dict[str, Any] = {}
        if cause is not None:
            details["cause"] = str(cause)
        super().__init__(message, details, status=status)
        self.cause = cause


class StorageError(SyncClientError):
    """A persistence operation failed."""

    kind = "storage"

    def __init__(self, operation: str, key: str | None = None, cause: Exception | None = None):
        details: dict[str, Any] = {"operation": operation}
        if key:
            details["key"] = key
        if cause:
            details["cause"] = str(cause)
        message = f"Storage error during {operation}"
        if key:
            message += f": {key}"
        super().__init__(message, details)
        self.operation = operation
        self.key = key
        self.cause = cause


class ChannelDisconnectedError(SyncClientError):
    """The event channel gave up reconnecting."""

    kind = "channel_disconnected"

    def __init__(self, url: str, attempts: int, cause: Exception | None = None):
        details: dict[str, Any] = {"url": url, "attempts": attempts}
        if cause:
            details["cause"] = str(cause)
        super().__init__(
            f"Event channel disconnected from {url} after {attempts} reconnect attempts",
            details,
        )
        self.url = url
        self.attempts = attempts
        self.cause = cause


# Statuses treated as transient in addition to 5xx
TRANSIENT_STATUS_CODES = frozenset({408, 429})


def classify_status(status: int, body: Any = None, url: str | None = None) -> SyncClientError | None:
    """Map an HTTP status to the error it represents, or None on success."""
    if 200 <= status < 400:
        return None

    details: dict[str, Any] = {}
    if url:
        details["url"] = url
    if body is not None:
        details["body"] = body

    if status == 401:
        return AuthExpiredError("Credential rejected by server", details, status=status)
    if status >= 500 or status in TRANSIENT_STATUS_CODES:
        return TransientNetworkError(f"Server returned {status}", details, status=status)
    return PermanentRequestError(f"Request rejected with {status}", details, status=status)


def classify_response(response: Response, url: str | None = None) -> SyncClientError | None:
    """Classify a response by status code."""
    return classify_status(response.status, response.body, url)
