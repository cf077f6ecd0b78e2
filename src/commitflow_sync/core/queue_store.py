"""
Durable queue and dead-letter stores.

Both stores keep their state in memory and persist the whole document after
every mutating call. Writes are serialized and render the document while
holding the write lock, so the last completed write always reflects the
latest in-memory state.
"""

import asyncio
import json
import logging
from typing import Any, Callable, List, Optional

from pydantic import BaseModel

from ..models.identifiers import TemporaryId
from .errors import QueueFullError
from .operations import (
    SCHEMA_VERSION,
    DeadLetterDocument,
    DeadLetterRecord,
    Operation,
    QueueDocument,
)
from .storage import ACTIVE_QUEUE_KEY, DEAD_LETTER_KEY, KeyValueStorage


class _DocumentStore:
    def __init__(self, storage: KeyValueStorage, key: str):
        self.storage = storage
        self.key = key
        self.logger = logging.getLogger(__name__)
        self._write_lock = asyncio.Lock()

    async def _read_json(self) -> Any:
        raw = await self.storage.read(self.key)
        if raw is None or not raw.strip():
            return None

        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            self.logger.error(f"Stored document '{self.key}' is not valid JSON: {e}")
            await self.storage.quarantine(self.key)
            return None

    async def _check_version(self, data: Any) -> bool:
        version = None
        if isinstance(data, dict):
            version = data.get("version", SCHEMA_VERSION)
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            self.logger.error(
                f"Stored document '{self.key}' has unsupported version {version!r}"
            )
            await self.storage.quarantine(self.key)
            return False
        return True

    async def _write(self, render: Callable[[], BaseModel]) -> None:
        async with self._write_lock:
            document = render()
            document_json = document.model_dump(by_alias=True, mode="json")
            payload = json.dumps(document_json, indent=2)
            await self.storage.write(self.key, payload)


class DurableQueueStore(_DocumentStore):
    """Ordered, persisted list of pending operations (FIFO)."""

    def __init__(
        self,
        storage: KeyValueStorage,
        key: str = ACTIVE_QUEUE_KEY,
        max_depth: int = 1000,
    ):
        super().__init__(storage, key)
        self.max_depth = max_depth
        self._operations: List[Operation] = []

    async def load(self) -> List[Operation]:
        """Rehydrate the queue from storage."""
        data = await self._read_json()

        if data is None:
            self._operations = []
        elif isinstance(data, list):
            self._operations = self._import_legacy(data)
            await self.persist()
        elif await self._check_version(data):
            try:
                self._operations = QueueDocument.model_validate(data).operations
            except ValueError as e:
                self.logger.error(f"Failed to load operation queue: {e}")
                await self.storage.quarantine(self.key)
                self._operations = []
        else:
            self._operations = []

        self.logger.debug(f"Loaded queue with {len(self._operations)} operations")
        return self.snapshot()

    def _import_legacy(self, entries: List[Any]) -> List[Operation]:
        operations = []
        for raw in entries:
            try:
                operations.append(Operation.from_legacy(raw))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipped invalid legacy operation {raw!r}: {e}")
        self.logger.info(f"Migrated {len(operations)} operations from legacy queue")
        return operations

    async def persist(self) -> None:
        await self._write(lambda: QueueDocument(operations=list(self._operations)))

    async def append(self, operation: Operation) -> None:
        """Add an operation at the tail; returns once it is durable."""
        if len(self._operations) >= self.max_depth:
            raise QueueFullError(self.max_depth)

        self._operations.append(operation)
        try:
            await self.persist()
        except Exception:
            self._operations.remove(operation)
            raise

    def peek_front(self) -> Optional[Operation]:
        return self._operations[0] if self._operations else None

    async def remove_front(self) -> Operation:
        if not self._operations:
            raise IndexError("remove_front on an empty queue")
        operation = self._operations.pop(0)
        await self.persist()
        return operation

    async def update_front(self, operation: Operation) -> None:
        """Replace the head entry (retry bookkeeping) and persist."""
        if not self._operations:
            raise IndexError("update_front on an empty queue")
        self._operations[0] = operation
        await self.persist()

    def snapshot(self) -> List[Operation]:
        return list(self._operations)

    def has_capacity(self, count: int = 1) -> bool:
        return len(self._operations) + count <= self.max_depth

    def find_create(self, client_ref: TemporaryId) -> Optional[Operation]:
        """Return the queued create that mints ``client_ref``, if any."""
        for operation in self._operations:
            if operation.is_create and operation.client_ref == client_ref:
                return operation
        return None

    def __len__(self) -> int:
        return len(self._operations)


class DeadLetterStore(_DocumentStore):
    """Append-only record of abandoned operations."""

    def __init__(self, storage: KeyValueStorage, key: str = DEAD_LETTER_KEY):
        super().__init__(storage, key)
        self._records: List[DeadLetterRecord] = []

    async def load(self) -> List[DeadLetterRecord]:
        data = await self._read_json()
        self._records = []
        if data is not None and await self._check_version(data):
            try:
                self._records = DeadLetterDocument.model_validate(data).records
            except ValueError as e:
                self.logger.error(f"Failed to load dead-letter list: {e}")
                await self.storage.quarantine(self.key)
        return self.records()

    async def persist(self) -> None:
        await self._write(lambda: DeadLetterDocument(records=list(self._records)))

    async def append(self, record: DeadLetterRecord) -> None:
        """Add a record; one already held for the same operation is replaced."""
        for index, existing in enumerate(self._records):
            if existing.operation.id == record.operation.id:
                self.logger.debug(
                    f"Operation {record.operation.id} already dead-lettered, replacing"
                )
                self._records[index] = record
                break
        else:
            self._records.append(record)
        await self.persist()

    async def pop(self, operation_id: str) -> Optional[DeadLetterRecord]:
        """Remove and return the record for an operation (operator requeue)."""
        for index, record in enumerate(self._records):
            if record.operation.id == operation_id:
                del self._records[index]
                await self.persist()
                return record
        return None

    async def clear(self) -> int:
        count = len(self._records)
        self._records = []
        await self.persist()
        return count

    def records(self) -> List[DeadLetterRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)
