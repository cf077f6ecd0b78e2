"""
Read-cache invalidation driven by flush runs and realtime server events.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from ..models.entities import EntityRecord, EntityType
from ..models.identifiers import TEMP_PREFIX, to_wire
from .api_client import RemoteApi
from .errors import NetworkError
from .mirror import EntityMirror

CacheKey = Tuple[str, ...]

TASKS = "tasks"
PROJECTS = "projects"
TEAM = "team"

logger = logging.getLogger(__name__)


class ReadCache(Protocol):
    """Anything that can drop or refresh data for a query key."""

    async def invalidate(self, key: CacheKey) -> None: ...


@dataclass
class ActiveScope:
    """The workspace and project the user is currently looking at"""

    workspace_id: Optional[str] = None
    project_id: Optional[str] = None

    def keys(self) -> List[CacheKey]:
        """Query keys refreshed after a flush run"""
        return [
            scoped_key(TASKS, self.project_id),
            scoped_key(PROJECTS, self.workspace_id),
            scoped_key(TEAM, self.workspace_id),
        ]


def scoped_key(prefix: str, scope_id: Optional[str]) -> CacheKey:
    return (prefix, scope_id) if scope_id else (prefix,)


BROAD_KEYS: List[CacheKey] = [(TASKS,), (PROJECTS,), (TEAM,)]


class InvalidationRouter:
    """Maps realtime events such as ``task.updated`` onto cache keys."""

    def __init__(self, cache: ReadCache, scope: ActiveScope):
        self.cache = cache
        self.scope = scope

    def keys_for(self, event_type: str) -> List[CacheKey]:
        if event_type.startswith("task."):
            return [scoped_key(TASKS, self.scope.project_id)]
        if event_type.startswith("project."):
            return [scoped_key(PROJECTS, self.scope.workspace_id)]
        if event_type.startswith("team."):
            return [scoped_key(TEAM, self.scope.workspace_id)]
        return list(BROAD_KEYS)

    async def handle_event(self, event: Dict[str, Any]) -> List[CacheKey]:
        """Invalidate the keys affected by one event; returns them."""
        event_type = str(event.get("type") or "")
        keys = self.keys_for(event_type)
        for key in keys:
            await self.cache.invalidate(key)
        logger.debug(f"Realtime event '{event_type}' invalidated {keys}")
        return keys

    async def handle_message(self, raw: Union[str, bytes]) -> List[CacheKey]:
        """Decode a transport frame and route it. Malformed frames are ignored."""
        try:
            event = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.debug(f"Ignoring malformed realtime message: {e}")
            return []

        if not isinstance(event, dict):
            return []
        return await self.handle_event(event)

    async def listen(self, messages: AsyncIterable[Union[str, bytes]]) -> int:
        """Route every message from a transport until it closes."""
        handled = 0
        async for raw in messages:
            if await self.handle_message(raw):
                handled += 1
        return handled

    async def follow(
        self,
        connect: Callable[[], AsyncIterable[Union[str, bytes]]],
        stop: asyncio.Event,
        backoff: Optional["ReconnectBackoff"] = None,
    ) -> None:
        """Keep a transport connected, reconnecting with exponential backoff."""
        backoff = backoff or ReconnectBackoff()
        while not stop.is_set():
            try:
                await self.listen(_reset_on_first(connect(), backoff))
            except (OSError, NetworkError) as e:
                logger.warning(f"Realtime connection lost: {e}")

            if stop.is_set():
                break
            delay = backoff.next_delay()
            logger.info(f"Reconnecting realtime stream in {delay:.1f}s")
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue


async def _reset_on_first(
    messages: AsyncIterable[Union[str, bytes]], backoff: "ReconnectBackoff"
) -> AsyncIterable[Union[str, bytes]]:
    first = True
    async for raw in messages:
        if first:
            backoff.reset()
            first = False
        yield raw


class ReconnectBackoff:
    """Exponential reconnect delay: 0.5s, 1s, 2s, ... capped at 30s."""

    def __init__(self, base: float = 0.5, cap: float = 30.0):
        self.base = base
        self.cap = cap
        self.attempts = 0

    def next_delay(self) -> float:
        self.attempts += 1
        return min(self.cap, self.base * 2 ** (self.attempts - 1))

    def reset(self) -> None:
        self.attempts = 0


class MirrorRefresher:
    """``ReadCache`` that re-fetches confirmed records into the mirror.

    Un-scoped keys carry no id to fetch by and are skipped, as are scopes
    that are still temporary.
    """

    def __init__(self, api: RemoteApi, mirror: EntityMirror):
        self.api = api
        self.mirror = mirror

    async def invalidate(self, key: CacheKey) -> None:
        if len(key) < 2 or not key[1] or str(key[1]).startswith(TEMP_PREFIX):
            logger.debug(f"Nothing to refresh for {key}")
            return

        prefix, scope_id = key[0], str(key[1])
        if prefix == TASKS:
            records = await self.api.get_tasks(scope_id)
            self._merge(EntityType.TASK, records, "project_id", scope_id)
        elif prefix == PROJECTS:
            records = await self.api.get_projects(scope_id)
            self._merge(EntityType.PROJECT, records, "workspace_id", scope_id)
        elif prefix == TEAM:
            records = await self.api.get_team(scope_id)
            self._merge(EntityType.TEAM, records, "workspace_id", scope_id)
        else:
            logger.debug(f"Unknown cache key {key}")

    def _merge(
        self,
        entity_type: EntityType,
        records: List[Dict[str, Any]],
        scope_attr: str,
        scope_id: str,
    ) -> None:
        def in_scope(record: EntityRecord) -> bool:
            return to_wire(getattr(record, scope_attr, None)) == scope_id

        count = self.mirror.merge_snapshot(entity_type, records, scope=in_scope)
        logger.debug(f"Refreshed {count} {entity_type.value} records for {scope_id}")
