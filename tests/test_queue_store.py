"""
Tests for the durable queue and dead-letter stores.
"""

import asyncio
import json

import pytest

from src.commitflow_sync.core.errors import QueueFullError, StorageError
from src.commitflow_sync.core.operations import (
    DeadLetterReason,
    DeadLetterRecord,
    Operation,
    OperationKind,
)
from src.commitflow_sync.core.queue_store import DeadLetterStore, DurableQueueStore
from src.commitflow_sync.core.storage import (
    ACTIVE_QUEUE_KEY,
    DEAD_LETTER_KEY,
    FileStorage,
    MemoryStorage,
)
from src.commitflow_sync.models import CanonicalId, TemporaryId


def create_op(title="Task"):
    return Operation(
        kind=OperationKind.CREATE_TASK,
        payload={"title": title},
        refs={"clientId": TemporaryId.mint(), "projectId": CanonicalId(value="p1")},
    )


class FailingStorage(MemoryStorage):
    async def write(self, key, value):
        raise StorageError("disk full")


class TestDurableQueueStore:
    """Queue persistence and ordering"""

    @pytest.mark.asyncio
    async def test_append_persists_before_returning(self, memory_storage):
        store = DurableQueueStore(memory_storage)
        op = create_op()
        await store.append(op)

        stored = json.loads(memory_storage.data[ACTIVE_QUEUE_KEY])
        assert stored["version"] == 1
        assert [entry["id"] for entry in stored["operations"]] == [op.id]

    @pytest.mark.asyncio
    async def test_fifo_order(self, memory_storage):
        store = DurableQueueStore(memory_storage)
        ops = [create_op(str(i)) for i in range(3)]
        for op in ops:
            await store.append(op)

        assert store.peek_front() is ops[0]
        assert await store.remove_front() is ops[0]
        assert [op.id for op in store.snapshot()] == [ops[1].id, ops[2].id]
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_remove_front_on_empty_queue(self, memory_storage):
        store = DurableQueueStore(memory_storage)
        assert store.peek_front() is None
        with pytest.raises(IndexError):
            await store.remove_front()

    @pytest.mark.asyncio
    async def test_update_front(self, memory_storage):
        store = DurableQueueStore(memory_storage)
        op = create_op()
        await store.append(op)

        op.retry_count = 3
        await store.update_front(op)

        stored = json.loads(memory_storage.data[ACTIVE_QUEUE_KEY])
        assert stored["operations"][0]["retryCount"] == 3

    @pytest.mark.asyncio
    async def test_reload_yields_identical_queue(self, temp_dir):
        store = DurableQueueStore(FileStorage(temp_dir))
        for i in range(3):
            await store.append(create_op(str(i)))
        await store.remove_front()

        reloaded = DurableQueueStore(FileStorage(temp_dir))
        operations = await reloaded.load()

        assert [op.to_document() for op in operations] == [
            op.to_document() for op in store.snapshot()
        ]

    @pytest.mark.asyncio
    async def test_atomic_write_leaves_no_temp_file(self, temp_dir):
        storage = FileStorage(temp_dir)
        await DurableQueueStore(storage).append(create_op())

        assert storage.path_for(ACTIVE_QUEUE_KEY).exists()
        assert not list(temp_dir.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_empty_storage_loads_empty_queue(self, memory_storage):
        store = DurableQueueStore(memory_storage)
        assert await store.load() == []

    @pytest.mark.asyncio
    async def test_legacy_queue_is_migrated(self, memory_storage):
        memory_storage.data[ACTIVE_QUEUE_KEY] = json.dumps(
            [
                {
                    "op": "create_project",
                    "payload": {"clientId": "tmp_p", "name": "P", "workspaceId": "w1"},
                    "createdAt": "2026-03-01T10:00:00.000Z",
                },
                {"op": "bogus_kind", "payload": {}},
                {
                    "op": "create_task",
                    "payload": {"clientId": "tmp_t", "title": "T", "projectId": "tmp_p"},
                    "__retryCount": 1,
                },
            ]
        )
        store = DurableQueueStore(memory_storage)
        operations = await store.load()

        assert [op.kind for op in operations] == [
            OperationKind.CREATE_PROJECT,
            OperationKind.CREATE_TASK,
        ]
        assert operations[1].refs["projectId"] == TemporaryId(token="p")
        assert operations[1].retry_count == 1

        stored = json.loads(memory_storage.data[ACTIVE_QUEUE_KEY])
        assert stored["version"] == 1
        assert len(stored["operations"]) == 2

    @pytest.mark.asyncio
    async def test_corrupted_file_is_quarantined(self, temp_dir):
        storage = FileStorage(temp_dir)
        storage.path_for(ACTIVE_QUEUE_KEY).write_text("{not json", encoding="utf-8")

        store = DurableQueueStore(storage)
        assert await store.load() == []
        assert list(temp_dir.glob("active_queue.corrupted_*.json"))
        assert not storage.path_for(ACTIVE_QUEUE_KEY).exists()

    @pytest.mark.asyncio
    async def test_newer_version_is_quarantined(self, memory_storage):
        memory_storage.data[ACTIVE_QUEUE_KEY] = json.dumps(
            {"version": 99, "operations": []}
        )
        store = DurableQueueStore(memory_storage)

        assert await store.load() == []
        assert ACTIVE_QUEUE_KEY in memory_storage.quarantined

    @pytest.mark.asyncio
    async def test_invalid_document_is_quarantined(self, memory_storage):
        memory_storage.data[ACTIVE_QUEUE_KEY] = json.dumps(
            {"version": 1, "operations": [{"kind": "create_task"}]}
        )
        store = DurableQueueStore(memory_storage)

        assert await store.load() == []
        assert ACTIVE_QUEUE_KEY in memory_storage.quarantined

    @pytest.mark.asyncio
    async def test_depth_bound(self, memory_storage):
        store = DurableQueueStore(memory_storage, max_depth=2)
        await store.append(create_op())
        await store.append(create_op())

        assert not store.has_capacity()
        with pytest.raises(QueueFullError):
            await store.append(create_op())
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back_append(self):
        store = DurableQueueStore(FailingStorage())
        with pytest.raises(StorageError):
            await store.append(create_op())
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_every_operation(self, memory_storage):
        store = DurableQueueStore(memory_storage)
        ops = [create_op(str(i)) for i in range(10)]
        await asyncio.gather(*(store.append(op) for op in ops))

        stored = json.loads(memory_storage.data[ACTIVE_QUEUE_KEY])
        assert len(stored["operations"]) == 10

    @pytest.mark.asyncio
    async def test_find_create(self, memory_storage):
        store = DurableQueueStore(memory_storage)
        op = create_op()
        await store.append(op)

        assert store.find_create(op.client_ref) is op
        assert store.find_create(TemporaryId(token="other")) is None


class TestDeadLetterStore:
    """Dead-letter persistence"""

    def record_for(self, op, reason=DeadLetterReason.UNRECOVERABLE):
        return DeadLetterRecord(operation=op, error="HTTP 404", reason=reason)

    @pytest.mark.asyncio
    async def test_append_and_reload(self, temp_dir):
        store = DeadLetterStore(FileStorage(temp_dir))
        op = create_op()
        await store.append(self.record_for(op, DeadLetterReason.EXHAUSTED))

        reloaded = DeadLetterStore(FileStorage(temp_dir))
        records = await reloaded.load()

        assert len(records) == 1
        assert records[0].operation.id == op.id
        assert records[0].reason is DeadLetterReason.EXHAUSTED

    @pytest.mark.asyncio
    async def test_pop(self, memory_storage):
        store = DeadLetterStore(memory_storage)
        first, second = create_op(), create_op()
        await store.append(self.record_for(first))
        await store.append(self.record_for(second))

        popped = await store.pop(first.id)

        assert popped.operation.id == first.id
        assert [r.operation.id for r in store.records()] == [second.id]
        assert await store.pop("missing") is None

    @pytest.mark.asyncio
    async def test_append_replaces_record_for_same_operation(self, memory_storage):
        store = DeadLetterStore(memory_storage)
        op = create_op()
        await store.append(self.record_for(op))
        await store.append(
            DeadLetterRecord(operation=op, error="HTTP 400", retry_count=2)
        )

        records = await DeadLetterStore(memory_storage).load()
        assert len(records) == 1
        assert records[0].error == "HTTP 400"
        assert records[0].retry_count == 2

    @pytest.mark.asyncio
    async def test_clear(self, memory_storage):
        store = DeadLetterStore(memory_storage)
        await store.append(self.record_for(create_op()))

        assert await store.clear() == 1
        assert len(store) == 0
        stored = json.loads(memory_storage.data[DEAD_LETTER_KEY])
        assert stored == {"version": 1, "records": []}

    @pytest.mark.asyncio
    async def test_corrupted_dead_letters_are_quarantined(self, memory_storage):
        memory_storage.data[DEAD_LETTER_KEY] = "[[["
        store = DeadLetterStore(memory_storage)

        assert await store.load() == []
        assert DEAD_LETTER_KEY in memory_storage.quarantined
