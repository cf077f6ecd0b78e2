"""
Core sync components: queue, mirror, reconciliation, classifier and engine.
"""

from .api_client import HttpRemoteApi, RemoteApi
from .classifier import Decision, Disposition, ErrorClassifier, Verdict
from .engine import FlushReport, SyncEngine, SyncState, SyncStatus
from .errors import (
    DeferredOperationError,
    DependencyPendingError,
    DuplicateOperationError,
    NetworkError,
    NotFoundError,
    OperationCancelledError,
    QueueFullError,
    ServerError,
    StorageError,
    SyncError,
    UnknownOperationError,
    UnresolvedReferenceError,
)
from .executor import CancellationToken, OperationExecutor
from .invalidation import (
    ActiveScope,
    InvalidationRouter,
    MirrorRefresher,
    ReadCache,
    ReconnectBackoff,
)
from .mirror import EntityMirror, LocalMutation, MutationAction
from .operations import (
    DEPENDENCY_SCHEMA,
    DeadLetterReason,
    DeadLetterRecord,
    FieldRole,
    FieldRule,
    Operation,
    OperationKind,
    OperationStatus,
)
from .queue_store import DeadLetterStore, DurableQueueStore
from .reconciliation import IdentifierMap, QueueReconciler
from .storage import FileStorage, KeyValueStorage, MemoryStorage

__all__ = [
    "HttpRemoteApi",
    "RemoteApi",
    "Decision",
    "Disposition",
    "ErrorClassifier",
    "Verdict",
    "FlushReport",
    "SyncEngine",
    "SyncState",
    "SyncStatus",
    "DeferredOperationError",
    "DependencyPendingError",
    "DuplicateOperationError",
    "NetworkError",
    "NotFoundError",
    "OperationCancelledError",
    "QueueFullError",
    "ServerError",
    "StorageError",
    "SyncError",
    "UnknownOperationError",
    "UnresolvedReferenceError",
    "CancellationToken",
    "OperationExecutor",
    "ActiveScope",
    "InvalidationRouter",
    "MirrorRefresher",
    "ReadCache",
    "ReconnectBackoff",
    "EntityMirror",
    "LocalMutation",
    "MutationAction",
    "DEPENDENCY_SCHEMA",
    "DeadLetterReason",
    "DeadLetterRecord",
    "FieldRole",
    "FieldRule",
    "Operation",
    "OperationKind",
    "OperationStatus",
    "DeadLetterStore",
    "DurableQueueStore",
    "IdentifierMap",
    "QueueReconciler",
    "FileStorage",
    "KeyValueStorage",
    "MemoryStorage",
]
