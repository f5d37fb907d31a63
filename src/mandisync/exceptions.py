"""Custom exception hierarchy for mandisync."""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for all mandisync errors."""


class SyncConfigError(SyncError):
    """Invalid or missing configuration."""


class CacheStorageError(SyncError):
    """Persistence-layer failure (serialization, I/O, corrupt entry).

    The cache store absorbs these and reports a miss; they never reach
    callers of :class:`mandisync.cache.TTLCacheStore`.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class RecordValidationError(SyncError, ValueError):
    """Malformed input handed to the core (bad record payload, bad radius)."""


class SourceTransportError(SyncError):
    """Record source failure (network, non-2xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        path: str = "",
    ) -> None:
        self.status_code = status_code
        self.path = path
        super().__init__(message)


class FetchFailure(SyncError):
    """A refresh from the record source failed.

    Recoverable: callers that have any cached payload get it back
    annotated with this error instead of the exception.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class SubscriptionFailure(SyncError):
    """A live feed dropped or could not be established.

    Recoverable: the real-time cache manager degrades the key to polling.
    """

    def __init__(self, message: str, *, key: str = "", path: str = "") -> None:
        self.key = key
        self.path = path
        super().__init__(message)


class NoDataAvailable(SyncError):
    """No connectivity and no cached payload for the requested key.

    Terminal for that call and surfaced to the calling layer.
    """

    def __init__(self, message: str = "No internet connection and no cached data available", *, key: str = "") -> None:
        self.key = key
        super().__init__(message)
