"""
Shared fixtures for the sync engine tests.
"""

import asyncio
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from src.commitflow_sync.config import SyncConfig
from src.commitflow_sync.core.storage import MemoryStorage

COMMITFLOW_ENV = [
    "COMMITFLOW_API_URL",
    "COMMITFLOW_API_TOKEN",
    "COMMITFLOW_STORAGE_DIR",
    "COMMITFLOW_MAX_PER_RUN",
    "COMMITFLOW_RETRY_LIMIT",
    "COMMITFLOW_FLUSH_INTERVAL",
    "COMMITFLOW_MAX_QUEUE_DEPTH",
    "COMMITFLOW_REQUEST_TIMEOUT",
    "COMMITFLOW_LOG_LEVEL",
    "COMMITFLOW_WORKSPACE_ID",
    "COMMITFLOW_PROJECT_ID",
]


class FakeRemoteApi:
    """In-memory stand-in for the CommitFlow REST API.

    Creates return the request body with a server id such as ``task-1``.
    ``fail(method, *errors)`` makes the next calls to ``method`` raise the
    given errors in order; ``fail_always`` makes every call raise. When
    ``gate`` is set, every call waits for it before answering.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.permanent: Dict[str, Exception] = {}
        self.counters: Dict[str, int] = defaultdict(int)
        self.snapshots: Dict[str, List[Dict[str, Any]]] = {}
        self.gate: Optional[asyncio.Event] = None
        self.omit_id = False

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures[method].extend(errors)

    def fail_always(self, method: str, error: Exception) -> None:
        self.permanent[method] = error

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    async def _call(self, method: str, *args: Any) -> None:
        self.calls.append((method,) + args)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures[method]:
            raise self.failures[method].pop(0)
        if method in self.permanent:
            raise self.permanent[method]

    def _created(self, prefix: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self.counters[prefix] += 1
        result = dict(body)
        if not self.omit_id:
            result["id"] = f"{prefix}-{self.counters[prefix]}"
        return result

    async def create_task(self, body):
        await self._call("create_task", body)
        return self._created("task", body)

    async def update_task(self, task_id, patch):
        await self._call("update_task", task_id, patch)
        return dict(patch, id=task_id)

    async def delete_task(self, task_id):
        await self._call("delete_task", task_id)

    async def create_project(self, body):
        await self._call("create_project", body)
        return self._created("project", body)

    async def update_project(self, project_id, patch):
        await self._call("update_project", project_id, patch)
        return dict(patch, id=project_id)

    async def delete_project(self, project_id):
        await self._call("delete_project", project_id)

    async def create_team_member(self, body):
        await self._call("create_team_member", body)
        return self._created("member", body)

    async def update_team_member(self, member_id, patch):
        await self._call("update_team_member", member_id, patch)
        return dict(patch, id=member_id)

    async def delete_team_member(self, member_id):
        await self._call("delete_team_member", member_id)

    async def create_comment(self, task_id, body):
        await self._call("create_comment", task_id, body)
        return self._created("comment", dict(body, taskId=task_id))

    async def get_tasks(self, project_id):
        await self._call("get_tasks", project_id)
        return self.snapshots.get(f"tasks:{project_id}", [])

    async def get_projects(self, workspace_id):
        await self._call("get_projects", workspace_id)
        return self.snapshots.get(f"projects:{workspace_id}", [])

    async def get_team(self, workspace_id):
        await self._call("get_team", workspace_id)
        return self.snapshots.get(f"team:{workspace_id}", [])


@pytest.fixture
def fake_api():
    """Fresh fake API per test."""
    return FakeRemoteApi()


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def sync_config():
    return SyncConfig(active_workspace_id="w1", storage_dir="unused")


@pytest.fixture
def clean_env(monkeypatch):
    """Remove COMMITFLOW_* variables so host settings do not leak in."""
    for name in COMMITFLOW_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
