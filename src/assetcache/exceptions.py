"""
Custom exception hierarchy for the asset cache.

All exceptions inherit from AssetCacheError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class AssetCacheError(Exception):
    """Base exception for all asset cache errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(AssetCacheError):
    """Raised when configuration is invalid.

    Examples:
        - Non-positive capacity or TTL
        - Unknown oversized-item policy
    """

    pass


class StorageError(AssetCacheError):
    """Base class for persistent store failures.

    Attributes:
        payload: Bytes that were fetched but could not be persisted, if any.
            Set by get-or-fetch so callers can still serve the asset.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        payload: bytes | None = None,
    ) -> None:
        super().__init__(message, context)
        self.payload = payload


class StorageUnavailableError(StorageError):
    """Raised when the store is not open or cannot be opened.

    Context should include:
        - cache_dir: Location of the store, when it has one
        - error: The underlying error
    """

    pass


class StorageWriteError(StorageError):
    """Raised when a put, delete, clear or eviction fails.

    A failed write never leaves a partial record visible to readers.

    Context should include:
        - key: The storage key being written
        - error: The underlying error
    """

    pass


class FetchError(AssetCacheError):
    """Raised when downloading an asset fails.

    Attributes:
        url: The URL that was being fetched.
        status_code: HTTP status code, when a response was received.
    """

    def __init__(
        self,
        message: str,
        url: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = {"url": url}
        if status_code is not None:
            ctx["status_code"] = status_code
        ctx.update(context or {})
        super().__init__(message, ctx)
        self.url = url
        self.status_code = status_code


class FetchCancelledError(FetchError):
    """Raised when a download is abandoned through its cancellation token."""

    pass


class FetchTimeoutError(FetchError):
    """Raised when a download does not complete within its timeout."""

    pass


class CapacityExceededError(AssetCacheError):
    """Raised when an item is larger than the whole cache.

    Only raised under the "reject" oversized policy.

    Context should include:
        - key: The storage key
        - size_bytes: Size of the rejected item
        - capacity_bytes: Configured capacity

    Attributes:
        payload: The rejected bytes, when they were downloaded by the cache.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        payload: bytes | None = None,
    ) -> None:
        super().__init__(message, context)
        self.payload = payload
