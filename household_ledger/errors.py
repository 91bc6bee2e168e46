"""
Error taxonomy for the ledger engine.

Validation and not-found errors are always surfaced to the caller. Consistency
repair (migration, virtual-entry cleanup) is logged instead of raised.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger engine errors."""

    pass


class ValidationError(LedgerError):
    """Malformed input or an illegal state transition."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class NotFoundError(LedgerError):
    """A month, instance, occurrence, claim or other entity does not exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} {identifier} not found")
        self.resource = resource
        self.identifier = identifier


class ConflictError(LedgerError):
    """The entity being created already exists."""

    pass


class ReadOnlyError(LedgerError):
    def __init__(self, month: str) -> None:
        super().__init__(f"Month {month} is read-only. Unlock it to make changes.")
        self.month = month


class StorageError(LedgerError):
    """A stored blob could not be read or written."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


def format_user_error(error: Exception) -> str:
    """Render an error for end users (no tracebacks, no internals)."""
    if isinstance(error, ValidationError) and error.field:
        return f"{error.message} (field: {error.field})"
    if isinstance(error, StorageError):
        return "Could not access stored data. Check the data directory and try again."
    if isinstance(error, LedgerError):
        return str(error)
    return "An unexpected error occurred."
