"""
Maps queued operations onto remote API calls.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from ..models.identifiers import CanonicalId, parse_ref
from .api_client import JsonBody, RemoteApi
from .errors import (
    DeferredOperationError,
    OperationCancelledError,
    ServerError,
    UnknownOperationError,
)
from .operations import Operation, OperationKind


class CancellationToken:
    """Cooperative stop signal checked before every dispatch."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError("Sync engine was stopped")


class OperationExecutor:
    """Dispatches one operation to the matching ``RemoteApi`` call.

    Creates send the temporary identifier as ``clientId`` and never as
    ``id``; the server upserts on ``clientId`` so a retried create does not
    produce a second entity.
    """

    def __init__(
        self,
        api: RemoteApi,
        active_workspace: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.api = api
        self.active_workspace = active_workspace or (lambda: None)
        self.logger = logging.getLogger(__name__)

        self._handlers: Dict[OperationKind, Callable[[Operation], Awaitable[Any]]] = {
            OperationKind.CREATE_TASK: self.handle_create_task,
            OperationKind.UPDATE_TASK: self.handle_update_task,
            OperationKind.DELETE_TASK: self.handle_delete_task,
            OperationKind.CREATE_PROJECT: self.handle_create_project,
            OperationKind.UPDATE_PROJECT: self.handle_update_project,
            OperationKind.DELETE_PROJECT: self.handle_delete_project,
            OperationKind.CREATE_TEAM: self.handle_create_team,
            OperationKind.UPDATE_TEAM: self.handle_update_team,
            OperationKind.DELETE_TEAM: self.handle_delete_team,
            OperationKind.CREATE_COMMENT: self.handle_create_comment,
        }

    async def dispatch(
        self, operation: Operation, token: Optional[CancellationToken] = None
    ) -> Optional[JsonBody]:
        """
        Send an operation to the server.

        Args:
            operation: Queue entry whose references are all canonical
            token: Checked immediately before the request is issued

        Returns:
            The server's JSON body, if any

        Raises:
            OperationCancelledError: If ``token`` was cancelled
            DeferredOperationError: If the operation cannot be sent yet
            UnknownOperationError: If no handler exists for the kind
        """
        handler = self._handlers.get(operation.kind)
        if handler is None:
            raise UnknownOperationError(f"Unknown operation kind: {operation.kind}")

        pending = operation.temporary_dependencies()
        if pending:
            paths = ", ".join(rule.path for rule, _ in pending)
            raise DeferredOperationError(f"Unresolved temporary references: {paths}")

        if token is not None:
            token.raise_if_cancelled()

        self.logger.debug(f"Dispatching {operation.kind.value} (op {operation.id})")
        result = await handler(operation)

        if operation.is_create:
            self._check_created(operation, result)
        return result

    @staticmethod
    def _check_created(operation: Operation, result: Any) -> None:
        ref = parse_ref(result.get("id")) if isinstance(result, dict) else None
        if not isinstance(ref, CanonicalId):
            raise ServerError(
                502, f"{operation.kind.value} response carried no canonical id"
            )

    @staticmethod
    def _split_target(operation: Operation) -> tuple:
        body = operation.render()
        target = body.pop("id")
        return target, body

    # Tasks

    async def handle_create_task(self, operation: Operation) -> Any:
        return await self.api.create_task(operation.render())

    async def handle_update_task(self, operation: Operation) -> Any:
        target, body = self._split_target(operation)
        return await self.api.update_task(target, body.get("patch", {}))

    async def handle_delete_task(self, operation: Operation) -> Any:
        target, _ = self._split_target(operation)
        return await self.api.delete_task(target)

    # Projects

    async def handle_create_project(self, operation: Operation) -> Any:
        body = operation.render()
        if not body.get("workspaceId"):
            workspace_id = self.active_workspace()
            if not workspace_id:
                raise DeferredOperationError(
                    "create_project has no workspaceId and no workspace is active"
                )
            body["workspaceId"] = workspace_id
        return await self.api.create_project(body)

    async def handle_update_project(self, operation: Operation) -> Any:
        target, body = self._split_target(operation)
        return await self.api.update_project(target, body.get("patch", {}))

    async def handle_delete_project(self, operation: Operation) -> Any:
        target, _ = self._split_target(operation)
        return await self.api.delete_project(target)

    # Team

    async def handle_create_team(self, operation: Operation) -> Any:
        return await self.api.create_team_member(operation.render())

    async def handle_update_team(self, operation: Operation) -> Any:
        target, body = self._split_target(operation)
        return await self.api.update_team_member(target, body.get("patch", {}))

    async def handle_delete_team(self, operation: Operation) -> Any:
        target, _ = self._split_target(operation)
        return await self.api.delete_team_member(target)

    # Comments

    async def handle_create_comment(self, operation: Operation) -> Any:
        body = operation.render()
        task_id = body.pop("taskId", None)
        if not task_id:
            raise ServerError(400, "create_comment requires a taskId")
        return await self.api.create_comment(
            task_id,
            {
                "author": body.get("author", ""),
                "body": body.get("body", ""),
                "attachments": body.get("attachments", []),
                "clientId": body["clientId"],
            },
        )
