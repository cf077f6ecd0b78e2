"""
Tests for the OperationExecutor dispatch table.
"""

import pytest

from src.commitflow_sync.core.errors import (
    DeferredOperationError,
    OperationCancelledError,
    ServerError,
)
from src.commitflow_sync.core.executor import CancellationToken, OperationExecutor
from src.commitflow_sync.core.operations import Operation, OperationKind
from src.commitflow_sync.models import CanonicalId, TemporaryId

TASK_TEMP = TemporaryId(token="task")


class TestOperationExecutor:
    """Operation to API call mapping"""

    @pytest.mark.asyncio
    async def test_create_sends_client_id_not_id(self, fake_api):
        executor = OperationExecutor(fake_api)
        op = Operation(
            kind=OperationKind.CREATE_TASK,
            payload={"title": "Ship"},
            refs={"clientId": TASK_TEMP, "projectId": CanonicalId(value="p1")},
        )

        result = await executor.dispatch(op)

        _, body = fake_api.calls_to("create_task")[0]
        assert body == {"title": "Ship", "clientId": "tmp_task", "projectId": "p1"}
        assert "id" not in body
        assert result["id"] == "task-1"

    @pytest.mark.asyncio
    async def test_create_project_uses_active_workspace(self, fake_api):
        executor = OperationExecutor(fake_api, active_workspace=lambda: "w1")
        op = Operation(
            kind=OperationKind.CREATE_PROJECT,
            payload={"name": "Launch"},
            refs={"clientId": TemporaryId(token="p")},
        )

        await executor.dispatch(op)

        _, body = fake_api.calls_to("create_project")[0]
        assert body["workspaceId"] == "w1"

    @pytest.mark.asyncio
    async def test_create_project_without_workspace_is_deferred(self, fake_api):
        executor = OperationExecutor(fake_api)
        op = Operation(
            kind=OperationKind.CREATE_PROJECT,
            payload={"name": "Launch"},
            refs={"clientId": TemporaryId(token="p")},
        )

        with pytest.raises(DeferredOperationError):
            await executor.dispatch(op)
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_update_sends_patch_to_target(self, fake_api):
        executor = OperationExecutor(fake_api)
        op = Operation(
            kind=OperationKind.UPDATE_TASK,
            payload={"patch": {"status": "done"}},
            refs={"id": CanonicalId(value="t1")},
        )

        await executor.dispatch(op)

        assert fake_api.calls == [("update_task", "t1", {"status": "done"})]

    @pytest.mark.asyncio
    async def test_delete(self, fake_api):
        executor = OperationExecutor(fake_api)
        op = Operation(
            kind=OperationKind.DELETE_TEAM, refs={"id": CanonicalId(value="m1")}
        )

        assert await executor.dispatch(op) is None
        assert fake_api.calls == [("delete_team_member", "m1")]

    @pytest.mark.asyncio
    async def test_create_comment(self, fake_api):
        executor = OperationExecutor(fake_api)
        op = Operation(
            kind=OperationKind.CREATE_COMMENT,
            payload={"author": "Ana", "body": "Looks good"},
            refs={
                "clientId": TemporaryId(token="c"),
                "taskId": CanonicalId(value="t1"),
            },
        )

        await executor.dispatch(op)

        assert fake_api.calls == [
            (
                "create_comment",
                "t1",
                {
                    "author": "Ana",
                    "body": "Looks good",
                    "attachments": [],
                    "clientId": "tmp_c",
                },
            )
        ]

    @pytest.mark.asyncio
    async def test_comment_without_task_is_rejected(self, fake_api):
        executor = OperationExecutor(fake_api)
        op = Operation(
            kind=OperationKind.CREATE_COMMENT,
            payload={"body": "orphan"},
            refs={"clientId": TemporaryId(token="c")},
        )

        with pytest.raises(ServerError) as exc_info:
            await executor.dispatch(op)
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_unresolved_reference_is_deferred(self, fake_api):
        executor = OperationExecutor(fake_api)
        op = Operation(kind=OperationKind.DELETE_TASK, refs={"id": TASK_TEMP})

        with pytest.raises(DeferredOperationError, match="id"):
            await executor.dispatch(op)
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_dispatch(self, fake_api):
        executor = OperationExecutor(fake_api)
        token = CancellationToken()
        token.cancel()
        op = Operation(
            kind=OperationKind.DELETE_TASK, refs={"id": CanonicalId(value="t1")}
        )

        with pytest.raises(OperationCancelledError):
            await executor.dispatch(op, token)
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_create_without_canonical_id_fails(self, fake_api):
        fake_api.omit_id = True
        executor = OperationExecutor(fake_api)
        op = Operation(
            kind=OperationKind.CREATE_TEAM,
            payload={"name": "Ana"},
            refs={"clientId": TemporaryId(token="m")},
        )

        with pytest.raises(ServerError) as exc_info:
            await executor.dispatch(op)
        assert exc_info.value.status == 502


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled
    token.raise_if_cancelled()

    token.cancel()
    assert token.cancelled
    with pytest.raises(OperationCancelledError):
        token.raise_if_cancelled()
