"""Shared error types for the relay package."""


class RelayError(Exception):
    """Base exception for relay errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class ConfigError(RelayError):
    """Raised when required configuration is missing or invalid."""


class StoreError(RelayError):
    """Raised when the persistent store rejects or fails a request."""


class TaskRowError(StoreError):
    """Raised when a stored task row cannot be decoded.

    Attributes:
        task_id: Id of the offending row, when it has one
    """

    def __init__(self, message: str, task_id: str | None = None):
        super().__init__(message)
        self.task_id = task_id


class TaskStateError(RelayError):
    """Raised on an illegal task status transition."""


class ResumeStateError(RelayError):
    """Raised when a task's stored resume state cannot be decoded."""


class LockError(RelayError):
    """Raised when the process lock is held by another live instance."""
