"""Custom exceptions for the agent task queue.

Provides a hierarchical exception structure for the different error domains
(configuration, persistence, task state and runner execution) so callers can
handle failures precisely and surface clear messages.
"""

from typing import Optional, Any


class QueueException(Exception):
    """Base exception for all task queue errors."""

    def __init__(self, message: str, details: Optional[Any] = None):
        """Initialize with message and optional details."""
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        """String representation with details if available."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ConfigurationException(QueueException):
    """Exceptions related to configuration management."""

    pass


class InvalidConfigError(ConfigurationException):
    """Configuration file is invalid or malformed."""

    pass


class ConfigValidationError(ConfigurationException):
    """Configuration validation failed."""

    pass


class StateException(QueueException):
    """Exceptions related to queue persistence."""

    pass


class StateLoadError(StateException):
    """Failed to load the persisted queue snapshot."""

    pass


class StateSaveError(StateException):
    """Failed to write the queue snapshot."""

    pass


class StateCorruptionError(StateException):
    """Persisted snapshot is corrupted or does not validate."""

    pass


class QueueLockedError(StateException):
    """Another process is running the queue and owns the snapshot."""

    pass


class TaskException(QueueException):
    """Exceptions related to task records and their lifecycle."""

    pass


class TaskNotFoundError(TaskException):
    """Referenced task does not exist in the queue."""

    pass


class InvalidTransitionError(TaskException, ValueError):
    """Requested status transition is not part of the task state machine."""

    pass


class TaskNotEditableError(InvalidTransitionError):
    """Task can only be edited, removed or reordered while pending."""

    pass


class RunnerException(QueueException):
    """Exceptions raised while preparing or executing a task run."""

    pass


class PreflightError(RunnerException):
    """Task failed validation before any process was started.

    Preflight failures are always permanent and never retried.
    """

    pass


class ModelResolutionError(PreflightError):
    """Neither the task nor the backend configuration supplies a model."""

    pass


class TaskRunError(RunnerException):
    """Run could not be started or ended abnormally."""

    def __init__(
        self,
        message: str,
        failure_kind: str = "permanent",
        details: Optional[Any] = None,
    ):
        super().__init__(message, details)
        self.failure_kind = failure_kind


class TransportError(RunnerException):
    """The CLI process transport failed."""

    pass


def with_context(exception: Exception, context: dict) -> Exception:
    """Add context information to an exception.

    Args:
        exception: The exception to enhance
        context: Dictionary of contextual information

    Returns:
        The same exception with added context
    """
    if isinstance(exception, QueueException):
        existing = exception.details if isinstance(exception.details, dict) else {}
        exception.details = {**existing, **context}
    return exception
