"""
Sync engine: optimistic mutations, the durable queue and the flush scheduler.

A mutation is applied to the mirror and appended to the durable queue in one
call. Flush runs drain the queue in FIFO order, at most ``max_per_run``
operations per run:

- success removes the operation and, for creates, rewrites every queued
  reference to the temporary id before the next dispatch;
- a recoverable failure under the retry limit increments ``retryCount`` and
  ends the run;
- an unrecoverable or exhausted failure moves the operation to the
  dead-letter store and the run continues.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..config import SyncConfig
from ..models.entities import EntityRecord, EntityType
from ..models.identifiers import CanonicalId, Ref, TemporaryId, parse_ref
from .api_client import JsonBody, RemoteApi
from .classifier import Disposition, ErrorClassifier
from .errors import (
    DeferredOperationError,
    DependencyPendingError,
    DuplicateOperationError,
    OperationCancelledError,
    QueueFullError,
    UnresolvedReferenceError,
)
from .executor import CancellationToken, OperationExecutor
from .invalidation import ActiveScope, ReadCache
from .mirror import EntityMirror, LocalMutation, MutationAction
from .operations import (
    DEPENDENCY_SCHEMA,
    DeadLetterReason,
    DeadLetterRecord,
    FieldRole,
    Operation,
    OperationKind,
    OperationStatus,
    extract_ref,
)
from .queue_store import DeadLetterStore, DurableQueueStore
from .reconciliation import IdentifierMap, QueueReconciler
from .storage import KeyValueStorage

IdLike = Union[Ref, str]


class SyncState(str, Enum):
    IDLE = "idle"  # operations pending, waiting for the next run
    SYNCING = "syncing"
    SYNCED = "synced"


@dataclass
class FlushReport:
    """Outcome of one flush run"""

    dispatched: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    deferred: bool = False
    cancelled: bool = False
    remaining: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changed(self) -> bool:
        return bool(self.succeeded or self.dead_lettered)


@dataclass
class SyncStatus:
    """Summary published to subscribers after every queue change"""

    state: SyncState
    pending: int
    dead_letters: int
    last_report: Optional[FlushReport] = None


StatusListener = Callable[[SyncStatus], None]


class SyncEngine:
    """Single entry point for optimistic mutations and background sync."""

    def __init__(
        self,
        api: RemoteApi,
        storage: KeyValueStorage,
        config: Optional[SyncConfig] = None,
        mirror: Optional[EntityMirror] = None,
        cache: Optional[ReadCache] = None,
        classifier: Optional[ErrorClassifier] = None,
        executor: Optional[OperationExecutor] = None,
    ):
        self.config = config or SyncConfig()
        self.logger = logging.getLogger(__name__)

        self.api = api
        self.queue = DurableQueueStore(storage, max_depth=self.config.max_queue_depth)
        self.dead_letters = DeadLetterStore(storage)
        self.mirror = mirror or EntityMirror()
        self.cache = cache
        self.classifier = classifier or ErrorClassifier(
            retry_limit=self.config.retry_limit,
            unrecoverable_statuses=self.config.unrecoverable_statuses,
            unrecoverable_patterns=self.config.unrecoverable_patterns,
        )
        self.scope = ActiveScope(
            self.config.active_workspace_id, self.config.active_project_id
        )
        self.executor = executor or OperationExecutor(
            api, lambda: self.scope.workspace_id
        )
        self.id_map = IdentifierMap()
        self.reconciler = QueueReconciler(self.id_map)

        self._flushing = False
        self._token = CancellationToken()
        self._stop_event = asyncio.Event()
        self._timer_task: Optional[asyncio.Task] = None
        self._background: set = set()
        self._listeners: List[StatusListener] = []
        self._last_report: Optional[FlushReport] = None

        self.mirror.on_identifier_changed(self._on_identifier_changed)
        self.mirror.guard_signature_matches(self._may_match_by_signature)

    # Lifecycle

    async def load(self) -> None:
        """Rehydrate the queue and dead-letter list from storage."""
        await self.queue.load()
        await self.dead_letters.load()
        self.logger.info(
            f"Loaded {len(self.queue)} pending and "
            f"{len(self.dead_letters)} dead-lettered operations"
        )
        self._publish()

    async def start(self) -> None:
        """Start the periodic flush timer (first run is immediate)."""
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._token = CancellationToken()
        self._stop_event = asyncio.Event()
        self._timer_task = asyncio.create_task(self._run_timer())
        self.logger.info(
            f"Sync timer started (every {self.config.flush_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Cancel further dispatches and wait for the timer to wind down.

        A request already in flight is allowed to finish so its outcome is
        recorded in the queue.
        """
        self._token.cancel()
        self._stop_event.set()
        if self._timer_task is not None:
            await self._timer_task
            self._timer_task = None
        if self._background:
            await asyncio.gather(*self._background)
        self.logger.info("Sync engine stopped")

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    async def _run_timer(self) -> None:
        while not self._stop_event.is_set():
            await self.attempt_flush()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.config.flush_interval_seconds,
                )
            except asyncio.TimeoutError:
                continue

    # Triggers

    async def notify_online(self) -> Optional[FlushReport]:
        """Connectivity came back; flush right away."""
        self.logger.info("Back online, flushing queue")
        return await self.attempt_flush()

    async def request_sync(self) -> Optional[FlushReport]:
        return await self.attempt_flush()

    def set_active_scope(
        self, workspace_id: Optional[str] = None, project_id: Optional[str] = None
    ) -> None:
        self.scope.workspace_id = workspace_id
        self.scope.project_id = project_id

    # Status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Receive a ``SyncStatus`` after every queue change."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def status(self) -> SyncStatus:
        if self._flushing:
            state = SyncState.SYNCING
        elif len(self.queue):
            state = SyncState.IDLE
        else:
            state = SyncState.SYNCED
        return SyncStatus(
            state=state,
            pending=len(self.queue),
            dead_letters=len(self.dead_letters),
            last_report=self._last_report,
        )

    def _publish(self) -> None:
        status = self.status()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                self.logger.error(f"Status listener failed: {e}")

    # Queue entry

    async def enqueue(self, operation: Operation) -> Operation:
        """
        Append an operation to the durable queue.

        Temporary references already confirmed earlier in this session are
        resolved before the operation is stored.

        Raises:
            QueueFullError: If the queue is at its depth bound
            DuplicateOperationError: If a create with the same clientId is
                queued or was already confirmed
        """
        if operation.is_create:
            client_ref = operation.client_ref
            if self.queue.find_create(client_ref) or client_ref in self.id_map:
                raise DuplicateOperationError(
                    f"A create for {client_ref} is already queued or confirmed"
                )

        if not self.queue.has_capacity():
            raise QueueFullError(self.queue.max_depth)

        self.reconciler.resolve_pending(operation)
        await self.queue.append(operation)
        self.logger.debug(f"Queued {operation.kind.value} (op {operation.id})")
        self._publish()
        return operation

    def _ensure_capacity(self) -> None:
        if not self.queue.has_capacity():
            raise QueueFullError(self.queue.max_depth)

    @staticmethod
    def _build_operation(
        kind: OperationKind,
        body: Dict[str, Any],
        self_ref: Optional[Ref] = None,
    ) -> Operation:
        payload = dict(body)
        refs: Dict[str, Ref] = {}
        for rule in DEPENDENCY_SCHEMA[kind]:
            if rule.role is FieldRole.SELF:
                refs[rule.path] = self_ref
            elif rule.role is FieldRole.TARGET:
                refs[rule.path] = self_ref
            else:
                ref = extract_ref(payload, rule.path)
                if ref is not None:
                    refs[rule.path] = ref
        return Operation(kind=kind, payload=payload, refs=refs)

    async def _create(
        self, entity_type: EntityType, kind: OperationKind, changes: Dict[str, Any]
    ) -> EntityRecord:
        self._ensure_capacity()
        record = self.mirror.apply_local(
            entity_type, LocalMutation(MutationAction.CREATE, dict(changes))
        )
        body = {k: v for k, v in changes.items() if k not in ("id", "clientId")}
        try:
            await self.enqueue(self._build_operation(kind, body, record.id))
        except Exception:
            self.mirror.apply_local(
                entity_type, LocalMutation(MutationAction.DELETE, target=record.id)
            )
            raise
        return record

    async def _update(
        self,
        entity_type: EntityType,
        kind: OperationKind,
        target: IdLike,
        changes: Dict[str, Any],
    ) -> EntityRecord:
        self._ensure_capacity()
        ref = parse_ref(target)
        record = self.mirror.apply_local(
            entity_type, LocalMutation(MutationAction.UPDATE, dict(changes), ref)
        )
        await self.enqueue(self._build_operation(kind, {"patch": dict(changes)}, ref))
        return record

    async def _delete(
        self, entity_type: EntityType, kind: OperationKind, target: IdLike
    ) -> Operation:
        self._ensure_capacity()
        ref = parse_ref(target)
        self.mirror.apply_local(
            entity_type, LocalMutation(MutationAction.DELETE, target=ref)
        )
        return await self.enqueue(self._build_operation(kind, {}, ref))

    # Mutations

    async def create_task(self, **changes: Any) -> EntityRecord:
        """Create a task; keys use the API's camelCase names (``projectId``...)."""
        if self.scope.project_id:
            changes.setdefault("projectId", self.scope.project_id)
        return await self._create(EntityType.TASK, OperationKind.CREATE_TASK, changes)

    async def update_task(self, task_id: IdLike, **changes: Any) -> EntityRecord:
        return await self._update(
            EntityType.TASK, OperationKind.UPDATE_TASK, task_id, changes
        )

    async def delete_task(self, task_id: IdLike) -> Operation:
        return await self._delete(EntityType.TASK, OperationKind.DELETE_TASK, task_id)

    async def create_project(self, **changes: Any) -> EntityRecord:
        if self.scope.workspace_id:
            changes.setdefault("workspaceId", self.scope.workspace_id)
        return await self._create(
            EntityType.PROJECT, OperationKind.CREATE_PROJECT, changes
        )

    async def update_project(self, project_id: IdLike, **changes: Any) -> EntityRecord:
        return await self._update(
            EntityType.PROJECT, OperationKind.UPDATE_PROJECT, project_id, changes
        )

    async def delete_project(self, project_id: IdLike) -> Operation:
        return await self._delete(
            EntityType.PROJECT, OperationKind.DELETE_PROJECT, project_id
        )

    async def create_team_member(self, **changes: Any) -> EntityRecord:
        if self.scope.workspace_id:
            changes.setdefault("workspaceId", self.scope.workspace_id)
        return await self._create(EntityType.TEAM, OperationKind.CREATE_TEAM, changes)

    async def update_team_member(
        self, member_id: IdLike, **changes: Any
    ) -> EntityRecord:
        return await self._update(
            EntityType.TEAM, OperationKind.UPDATE_TEAM, member_id, changes
        )

    async def delete_team_member(self, member_id: IdLike) -> Operation:
        return await self._delete(EntityType.TEAM, OperationKind.DELETE_TEAM, member_id)

    async def create_comment(
        self,
        task_id: IdLike,
        body: str,
        author: str = "",
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> EntityRecord:
        changes = {
            "taskId": to_wire_id(task_id),
            "author": author,
            "body": body,
            "attachments": list(attachments or []),
        }
        return await self._create(
            EntityType.COMMENT, OperationKind.CREATE_COMMENT, changes
        )

    # Dead letters

    async def requeue_dead_letter(self, operation_id: str) -> Optional[Operation]:
        """Move a dead-lettered operation back to the tail of the queue."""
        self._ensure_capacity()
        record = await self.dead_letters.pop(operation_id)
        if record is None:
            return None

        operation = record.operation.model_copy(
            update={
                "retry_count": 0,
                "status": OperationStatus.PENDING,
                "last_error": None,
            }
        )
        self.reconciler.resolve_pending(operation)
        await self.queue.append(operation)
        self.logger.info(f"Requeued {operation.kind.value} (op {operation.id})")
        self._publish()
        return operation

    async def clear_dead_letters(self) -> int:
        count = await self.dead_letters.clear()
        self._publish()
        return count

    # Flushing

    async def attempt_flush(self) -> Optional[FlushReport]:
        """
        Run one flush batch.

        Returns:
            The run's report, or None if another run was already in progress
        """
        if self._flushing:
            self.logger.debug("Flush already in progress, skipping")
            return None

        self._flushing = True
        report = FlushReport()
        self._publish()

        try:
            await self._run_batch(report)
        except Exception as e:
            self.logger.error(f"Flush run failed: {e}")
            report.errors.append(str(e))
        finally:
            self._flushing = False

        report.remaining = len(self.queue)
        self._last_report = report

        if report.changed and not self._token.cancelled:
            await self._invalidate()

        if report.dispatched or report.dead_lettered:
            self.logger.info(
                f"Flush finished: {report.succeeded} synced, {report.retried} retried, "
                f"{report.dead_lettered} dead-lettered, {report.remaining} remaining"
            )
        self._publish()
        return report

    async def _run_batch(self, report: FlushReport) -> None:
        attempts = 0
        while attempts < self.config.max_per_run:
            if self._token.cancelled:
                report.cancelled = True
                return

            operation = self.queue.peek_front()
            if operation is None:
                return
            attempts += 1

            try:
                self._check_dependencies(operation)
                result = await self.executor.dispatch(operation, self._token)
            except OperationCancelledError:
                report.cancelled = True
                return
            except DeferredOperationError as e:
                self.logger.info(f"Deferring {operation.kind.value}: {e}")
                report.deferred = True
                return
            except Exception as e:
                report.dispatched += 1
                report.errors.append(f"{operation.kind.value}: {e}")
                if not await self._handle_failure(operation, e, report):
                    return
                continue

            report.dispatched += 1
            await self._handle_success(operation, result, report)

    def _check_dependencies(self, operation: Operation) -> None:
        """Resolve temporary references, or fail if they cannot be resolved.

        A reference whose create is still queued is not ready yet and is
        retried like a transient failure, which bounds the wait. A reference
        with no queued create and no known mapping was abandoned.
        """
        self.reconciler.resolve_pending(operation)
        for rule, ref in operation.temporary_dependencies():
            if self.queue.find_create(ref) is None:
                raise UnresolvedReferenceError(rule.path, ref.wire)
            raise DependencyPendingError(rule.path, ref.wire)

    async def _handle_success(
        self, operation: Operation, result: Optional[JsonBody], report: FlushReport
    ) -> None:
        temp = operation.client_ref
        if operation.is_create and temp is not None:
            canonical = CanonicalId(value=str(result["id"]))
            self.id_map.record(temp, canonical, operation.entity_type)
            self.reconciler.rewrite(
                self.queue.snapshot()[1:], temp, canonical, operation.entity_type
            )

        # rewrites above are persisted together with the removal
        await self.queue.remove_front()
        report.succeeded += 1
        self.logger.debug(f"Synced {operation.kind.value} (op {operation.id})")

        if operation.is_create and not self._token.cancelled:
            self._merge_created(operation, temp, result)

    def _merge_created(
        self, operation: Operation, temp: Optional[TemporaryId], result: JsonBody
    ) -> None:
        entity_type = operation.entity_type
        canonical = parse_ref(result.get("id"))
        if (
            self.mirror.get(entity_type, temp) is None
            and self.mirror.get(entity_type, canonical) is None
        ):
            # deleted locally while the create was queued
            self.logger.debug(f"Not merging {entity_type.value} {temp}: not mirrored")
            return

        try:
            self.mirror.merge_server_result(entity_type, temp, result)
        except ValueError as e:
            self.logger.warning(f"Could not merge server {entity_type.value}: {e}")

    async def _handle_failure(
        self, operation: Operation, error: Exception, report: FlushReport
    ) -> bool:
        """Apply the retry policy. Returns True if the run may continue."""
        decision = self.classifier.decide(error, operation.retry_count)
        operation.last_error = str(error)

        if decision.disposition is Disposition.RETRY:
            operation.retry_count += 1
            await self.queue.update_front(operation)
            report.retried += 1
            self.logger.warning(
                f"{operation.kind.value} failed (attempt {operation.retry_count}/"
                f"{self.classifier.retry_limit}): {error}"
            )
            return False

        await self._dead_letter(operation, error, decision.reason)
        report.dead_lettered += 1
        return True

    async def _dead_letter(
        self,
        operation: Operation,
        error: Exception,
        reason: Optional[DeadLetterReason],
    ) -> None:
        operation.status = OperationStatus.DEAD
        record = DeadLetterRecord(
            operation=operation.model_copy(deep=True),
            error=str(error),
            retry_count=operation.retry_count,
            reason=reason or DeadLetterReason.UNRECOVERABLE,
        )
        await self.dead_letters.append(record)
        await self.queue.remove_front()
        self.logger.warning(
            f"Dead-lettered {operation.kind.value} (op {operation.id}, "
            f"{record.reason.value}): {error}"
        )

    async def _invalidate(self) -> None:
        if self.cache is None:
            return
        for key in self.scope.keys():
            try:
                await self.cache.invalidate(key)
            except Exception as e:
                self.logger.warning(f"Cache invalidation for {key} failed: {e}")

    # Reconciliation

    def _may_match_by_signature(
        self, temp: TemporaryId, canonical: CanonicalId
    ) -> bool:
        """A temp whose create is still queued is resolved by its confirmation."""
        if self.queue.find_create(temp) is not None:
            return False
        return not self.id_map.maps_to(canonical)

    def _on_identifier_changed(
        self, entity_type: EntityType, temp: TemporaryId, canonical: CanonicalId
    ) -> None:
        self.id_map.record(temp, canonical, entity_type)
        if entity_type is EntityType.PROJECT and self.scope.project_id == temp.wire:
            self.scope.project_id = canonical.value
        changed = self.reconciler.rewrite(
            self.queue.snapshot(), temp, canonical, entity_type
        )
        if changed and not self._flushing:
            task = asyncio.get_running_loop().create_task(self.queue.persist())
            self._background.add(task)
            task.add_done_callback(self._background.discard)


def to_wire_id(value: IdLike) -> Optional[str]:
    ref = parse_ref(value)
    return ref.wire if ref is not None else None
