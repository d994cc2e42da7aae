"""
Exception hierarchy for the queue.

Lease conflicts are not errors: they are reported through return values
(``None``, ``False`` or ``FailureOutcome.CONFLICT``).
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class StorageError(QueueError):
    """
    The job store could not read or write.

    Attributes:
        operation: Name of the store operation that failed.
    """

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class InvalidJobError(QueueError, ValueError):
    """Enqueue arguments were rejected before reaching the store."""
