"""
HTTP client for the CommitFlow REST API.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

import httpx

from .errors import NetworkError, NotFoundError, ServerError

JsonBody = Dict[str, Any]
TokenProvider = Callable[[bool], Union[Optional[str], Awaitable[Optional[str]]]]


class RemoteApi(Protocol):
    """Mutation and read calls the sync engine depends on."""

    async def create_task(self, body: JsonBody) -> JsonBody: ...

    async def update_task(self, task_id: str, patch: JsonBody) -> JsonBody: ...

    async def delete_task(self, task_id: str) -> None: ...

    async def create_project(self, body: JsonBody) -> JsonBody: ...

    async def update_project(self, project_id: str, patch: JsonBody) -> JsonBody: ...

    async def delete_project(self, project_id: str) -> None: ...

    async def create_team_member(self, body: JsonBody) -> JsonBody: ...

    async def update_team_member(self, member_id: str, patch: JsonBody) -> JsonBody: ...

    async def delete_team_member(self, member_id: str) -> None: ...

    async def create_comment(self, task_id: str, body: JsonBody) -> JsonBody: ...

    async def get_tasks(self, project_id: str) -> List[JsonBody]: ...

    async def get_projects(self, workspace_id: str) -> List[JsonBody]: ...

    async def get_team(self, workspace_id: str) -> List[JsonBody]: ...


def error_message(response: httpx.Response) -> str:
    """Extract a readable message from an error response"""
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        message = data.get("message") or data.get("error")
        if message:
            return str(message)

    return response.reason_phrase or f"HTTP {response.status_code}"


class HttpRemoteApi:
    """``RemoteApi`` backed by a shared ``httpx.AsyncClient``.

    ``token_provider`` is called with ``refresh=False`` before each request
    and with ``refresh=True`` once after a 401; it may be sync or async.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[TokenProvider] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.logger = logging.getLogger(__name__)
        self.client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "HttpRemoteApi":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _token(self, refresh: bool) -> Optional[str]:
        if self.token_provider is None:
            return None
        token = self.token_provider(refresh)
        if inspect.isawaitable(token):
            token = await token
        return token

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[JsonBody] = None,
        params: Optional[Dict[str, str]] = None,
        token: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            return await self.client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            self.logger.warning(f"{method} {path} timed out")
            raise NetworkError(f"Request timed out: {method} {path}") from e
        except httpx.RequestError as e:
            self.logger.warning(f"{method} {path} failed: {e}")
            raise NetworkError(f"Request failed: {e}") from e

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[JsonBody] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (or None)."""
        token = await self._token(False)
        response = await self._send(method, path, json, params, token)

        if response.status_code == 401 and self.token_provider is not None:
            self.logger.info("Access token rejected, refreshing once")
            refreshed = await self._token(True)
            if refreshed:
                response = await self._send(method, path, json, params, refreshed)

        if response.status_code == 404:
            raise NotFoundError(error_message(response))
        if response.status_code >= 400:
            raise ServerError(response.status_code, error_message(response))

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    # Tasks

    async def create_task(self, body: JsonBody) -> JsonBody:
        return await self.request("POST", "/api/tasks", json=body)

    async def update_task(self, task_id: str, patch: JsonBody) -> JsonBody:
        return await self.request("PUT", f"/api/tasks/{task_id}", json=patch)

    async def delete_task(self, task_id: str) -> None:
        await self.request("DELETE", f"/api/tasks/{task_id}")

    async def get_tasks(self, project_id: str) -> List[JsonBody]:
        params = {"projectId": project_id}
        return await self.request("GET", "/api/tasks", params=params) or []

    # Projects

    async def create_project(self, body: JsonBody) -> JsonBody:
        return await self.request("POST", "/api/projects", json=body)

    async def update_project(self, project_id: str, patch: JsonBody) -> JsonBody:
        return await self.request("PUT", f"/api/projects/{project_id}", json=patch)

    async def delete_project(self, project_id: str) -> None:
        await self.request("DELETE", f"/api/projects/{project_id}")

    async def get_projects(self, workspace_id: str) -> List[JsonBody]:
        return await self.request("GET", f"/api/projects/{workspace_id}") or []

    # Team

    async def create_team_member(self, body: JsonBody) -> JsonBody:
        return await self.request("POST", "/api/team", json=body)

    async def update_team_member(self, member_id: str, patch: JsonBody) -> JsonBody:
        return await self.request("PUT", f"/api/team/{member_id}", json=patch)

    async def delete_team_member(self, member_id: str) -> None:
        await self.request("DELETE", f"/api/team/{member_id}")

    async def get_team(self, workspace_id: str) -> List[JsonBody]:
        return await self.request("GET", f"/api/team/{workspace_id}") or []

    # Comments

    async def create_comment(self, task_id: str, body: JsonBody) -> JsonBody:
        return await self.request("POST", f"/api/tasks/{task_id}/comments", json=body)
