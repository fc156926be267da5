"""Exceptions raised by task operations."""


class TaskboardError(Exception):
    """Base class for taskboard errors."""


class NotFoundError(TaskboardError):
    """Raised when a record does not exist or has been soft-deleted."""


class ForbiddenError(TaskboardError):
    """Raised when the caller lacks the role or ownership an operation needs."""


class ValidationError(TaskboardError, ValueError):
    """Raised when input is rejected before anything is persisted."""


class ConflictError(TaskboardError):
    """Raised when a save loses an optimistic version check."""
