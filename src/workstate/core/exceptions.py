"""Custom exceptions for workstate.

Persistence failures are mostly recovered locally (a store that fails to
open is replaced by a volatile one, a failed write is logged and dropped),
so these exceptions rarely reach application code. They exist so each
layer can tell recoverable storage failures apart from programming errors.
"""

from typing import Any


class WorkstateException(Exception):
    """Base exception class for workstate."""

    def __init__(
        self,
        message: str,
        error_code: str,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class StorageError(WorkstateException):
    """Base class for storage backend failures."""

    def __init__(self, message: str, error_code: str = "STORAGE_ERROR", details: dict[str, Any] | None = None):
        super().__init__(message=message, error_code=error_code, details=details)


class StoreOpenError(StorageError):
    """Raised when a named native store cannot be opened.

    The store registry catches this and substitutes a volatile in-memory
    store, so callers never observe it.
    """

    def __init__(self, store_name: str, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Failed to open store '{store_name}': {reason}",
            error_code="STORE_OPEN_FAILED",
            details=details or {"store": store_name, "reason": reason},
        )


class StorageOperationError(StorageError):
    """Raised when a reachable backend fails to read, write or delete a key."""

    def __init__(self, operation: str, key: str, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Storage {operation} failed for key '{key}': {reason}",
            error_code="STORAGE_OPERATION_FAILED",
            details=details or {"operation": operation, "key": key, "reason": reason},
        )


class StorageKeyError(StorageError):
    """Raised when a storage key is invalid (e.g. empty)."""

    def __init__(self, message: str = "Storage key cannot be empty", details: dict[str, Any] | None = None):
        super().__init__(message=message, error_code="INVALID_STORAGE_KEY", details=details)


class MigrationError(WorkstateException):
    """Raised when a custom migration hook fails on a stored value."""

    def __init__(self, key: str, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Migration failed for '{key}': {reason}",
            error_code="MIGRATION_FAILED",
            details=details or {"key": key, "reason": reason},
        )
