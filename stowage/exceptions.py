"""
Stowage exceptions.

This module defines custom exception classes used throughout the package.
"""


class StowageError(Exception):
    """Base class for all Stowage errors."""

    pass


class StorageError(StowageError):
    """Raised when an operation against the relational store cannot complete."""

    pass


class RetryExhaustedError(StorageError):
    """
    Raised when a transaction kept failing with retryable errors.

    The last underlying database error is available as ``__cause__``.
    """

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} failed after {attempts} attempt(s)")


class StartupError(StorageError):
    """
    Raised when crash recovery fails during startup.

    The storage must not serve dequeue requests after this error.
    """

    pass


class SerializationError(StowageError):
    """Raised when a workflow or response cannot be encoded."""

    pass


class DecodingError(StowageError):
    """Raised when a stored payload cannot be turned back into an object."""

    pass


class UnsupportedOperationError(StowageError, NotImplementedError):
    """Raised for operations the persistent storage deliberately does not offer."""

    pass


class BatcherFullError(StowageError):
    """Raised by Batcher.submit_nowait() when the command channel is full."""

    pass
