"""Exception taxonomy shared by the BarSync state engine."""

from __future__ import annotations


class BarSyncError(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BarSyncError):
    """Raised for malformed input such as a missing field or a bad quantity."""


class InvalidState(BarSyncError):
    """Raised when an operation is not allowed in the current state."""


class OutOfStock(InvalidState):
    """Raised when a reservation would take product stock below zero."""


class PermissionDenied(InvalidState):
    """Raised when the acting user's role lacks the required capability."""


class NotFound(BarSyncError):
    """Raised when an update or delete references an unknown id."""


class ConflictError(BarSyncError):
    """Raised for duplicate tenant names and ambiguous login names."""


class CredentialMismatch(BarSyncError):
    """Raised when login credentials do not match.

    The message is intentionally generic so callers cannot tell whether the
    username or the password was wrong.
    """

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class RemoteUnavailable(BarSyncError):
    """Raised when the remote store cannot be reached or fails server-side."""


class StorageError(BarSyncError):
    """Raised when the durable local store cannot be written."""


__all__ = [
    "BarSyncError",
    "ValidationError",
    "InvalidState",
    "OutOfStock",
    "PermissionDenied",
    "NotFound",
    "ConflictError",
    "CredentialMismatch",
    "RemoteUnavailable",
    "StorageError",
]
