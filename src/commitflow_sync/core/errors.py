"""
Exception taxonomy for the sync engine.

Per-operation failures are raised by the executor and API client and handled
inside ``SyncEngine.attempt_flush``; they never propagate out of a flush run.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for sync engine errors."""


class NetworkError(SyncError):
    """Connection failure or timeout talking to the API."""


class ServerError(SyncError):
    """The API answered with a non-success status."""

    def __init__(self, status: int, message: Optional[str] = None):
        self.status = status
        self.message = message or f"HTTP {status}"
        super().__init__(self.message)


class NotFoundError(ServerError):
    """The referenced entity no longer exists on the server."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(404, message or "Not found")


class UnresolvedReferenceError(SyncError):
    """An operation references a temporary id whose create was abandoned."""

    def __init__(self, path: str, reference: str):
        self.path = path
        self.reference = reference
        super().__init__(
            f"Field '{path}' references {reference}, which was never created"
        )


class DeferredOperationError(SyncError):
    """The operation cannot be dispatched yet; retry on a later run."""


class UnknownOperationError(SyncError):
    """The executor has no handler for an operation kind."""


class QueueFullError(SyncError):
    """The active queue reached its depth bound."""

    def __init__(self, depth: int):
        self.depth = depth
        super().__init__(f"Operation queue is full ({depth} pending operations)")


class DuplicateOperationError(SyncError):
    """A create with the same clientId is already queued or confirmed."""


class OperationCancelledError(SyncError):
    """The engine was stopped before the operation could be dispatched."""


class StorageError(SyncError):
    """Reading or writing durable state failed."""


class DependencyPendingError(SyncError):
    """A referenced entity's create is still waiting in the queue."""

    def __init__(self, path: str, reference: str):
        self.path = path
        self.reference = reference
        super().__init__(
            f"Field '{path}' waits for the create of {reference}, which is queued "
            f"behind it and cannot run first. The operation will be dead-lettered "
            f"once retries run out; requeue it after that create has synced"
        )
