from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base error for dashsync."""


class BackendConfigError(SyncError):
    """Missing or invalid data backend configuration."""


class BackendError(SyncError):
    """Data backend call failure."""


class NetworkError(BackendError):
    """Transient transport failure; safe to retry."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendTimeoutError(NetworkError):
    """Client-side timeout waiting for the backend."""


class RateLimitedError(NetworkError):
    """The backend throttled the caller (HTTP 429); retry after the pause."""

    def __init__(self, message: str, *, retry_after_s: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after_s = retry_after_s


class BackendRejectionError(BackendError):
    """The backend refused the request (constraint violation, bad input, permissions)."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class StaleReadError(SyncError):
    """Cached data outlived its TTL and revalidation failed; data is degraded, not missing."""

    def __init__(self, key: str, cause: BaseException | None = None) -> None:
        super().__init__(f"serving expired data for {key}")
        self.key = key
        self.cause = cause


class SubscriptionStateError(SyncError):
    """Illegal realtime subscription state transition."""
