"""
Exception hierarchy for SSO Sync.

Collaborators raise NotFoundError, ConflictError and TransportError; the engine
decides which of them converge silently and which abort the run.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class NotFoundError(SyncError):
    """Raised when a user or group does not exist in a directory."""
    pass


class ConflictError(SyncError):
    """Raised when the target refuses a create because the entity already exists."""
    status_code = 409


class TransportError(SyncError):
    """Raised when a request against either directory fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InconsistentStateError(SyncError):
    """Raised when the snapshots disagree with what the target actually holds."""
    pass


class SyncCancelled(SyncError):
    """Raised when the run's context was cancelled before the next I/O call."""
    pass


class OperationError(SyncError):
    """
    Fatal failure of a single apply operation.

    Carries the operation name and the entity key (email or display name) so the
    caller can report exactly where the run stopped.
    """

    def __init__(self, operation: str, key: str, cause: Exception):
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"{operation} failed for {key}: {cause}")
