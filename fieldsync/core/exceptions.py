"""Offline data layer exception hierarchy."""

from typing import Optional


class FieldSyncError(Exception):
    """Base exception for all offline cache and sync errors."""


class StorageError(FieldSyncError):
    """The key-value store failed to read or write (disk full, corruption)."""

    def __init__(self, operation: str, key: str, message: str):
        self.operation = operation
        self.key = key
        super().__init__(f"Storage {operation} failed for '{key}': {message}")


# ---- Read path ----

class NoCachedData(FieldSyncError):
    """Offline read with nothing ever cached for the key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No cached data available offline for '{key}'")


class RemoteFetchFailed(FieldSyncError):
    """Online fetch failed and there was no cached entry to fall back on."""

    def __init__(self, key: str, cause: Optional[BaseException] = None):
        self.key = key
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Remote fetch failed for '{key}'{detail}")


# ---- Write path ----

class QueueWriteFailed(FieldSyncError):
    """Persisting a queued operation failed; the write was not saved."""

    def __init__(self, entity_type: str, kind: str, message: str):
        self.entity_type = entity_type
        self.kind = kind
        super().__init__(f"Failed to queue {kind} {entity_type}: {message}")


class SyncAttemptFailed(FieldSyncError):
    """A single replay of a queued operation failed."""

    def __init__(self, operation_id: str, attempt_count: int, message: str):
        self.operation_id = operation_id
        self.attempt_count = attempt_count
        super().__init__(f"Sync attempt {attempt_count} failed for {operation_id}: {message}")


class RetryExhausted(SyncAttemptFailed):
    """The operation reached the attempt ceiling and needs a manual retry."""


class WriterNotRegistered(FieldSyncError):
    """No remote writer is registered for an entity type and kind."""

    def __init__(self, entity_type: str, kind: str):
        self.entity_type = entity_type
        self.kind = kind
        super().__init__(f"No remote writer registered for {kind} {entity_type}")


class NotFound(FieldSyncError):
    """No queued operation exists with the given id."""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Queued operation not found: {operation_id}")


class NotRetryable(FieldSyncError):
    """Retry requested for an operation whose state does not allow it."""

    def __init__(self, operation_id: str, status: str):
        self.operation_id = operation_id
        self.status = status
        super().__init__(f"Operation {operation_id} is {status} and cannot be retried")


class NoNetwork(FieldSyncError):
    """The action needs connectivity and the device is offline."""

    def __init__(self, message: str = "No network connection"):
        super().__init__(message)


# ---- Remote API ----

class RemoteError(FieldSyncError):
    """Base class for failures reported by the remote API client."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RemoteUnavailableError(RemoteError):
    """Network failure, timeout or 5xx response. Worth retrying."""


class RemoteValidationError(RemoteError):
    """The server rejected the data (4xx). Retrying will fail again."""
