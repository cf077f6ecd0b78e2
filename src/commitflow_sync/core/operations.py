"""
Queued operation models and the declared dependency schema.

Every field of a queued operation that can carry another entity's identifier
is declared in ``DEPENDENCY_SCHEMA``. Reconciliation and dispatch are generic
over that table, so adding an operation kind means adding one entry here.
"""

import copy
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from ..models.entities import EntityType
from ..models.identifiers import EntityRef, Ref, TemporaryId, parse_ref

SCHEMA_VERSION = 1


class OperationKind(str, Enum):
    """Supported mutation kinds."""

    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"
    CREATE_PROJECT = "create_project"
    UPDATE_PROJECT = "update_project"
    DELETE_PROJECT = "delete_project"
    CREATE_TEAM = "create_team"
    UPDATE_TEAM = "update_team"
    DELETE_TEAM = "delete_team"
    CREATE_COMMENT = "create_comment"


class OperationStatus(str, Enum):
    """Operation lifecycle as persisted."""

    PENDING = "pending"
    DEAD = "dead"


class FieldRole(str, Enum):
    """How an identifier-carrying field relates to its operation."""

    SELF = "self"  # a create's own clientId
    TARGET = "target"  # the entity an update/delete acts on
    REFERENCE = "reference"  # a relationship to another entity


@dataclass(frozen=True)
class FieldRule:
    path: str
    entity_type: EntityType
    role: FieldRole


_F = FieldRule
_R = FieldRole
_E = EntityType

DEPENDENCY_SCHEMA: Dict[OperationKind, Tuple[FieldRule, ...]] = {
    OperationKind.CREATE_TASK: (
        _F("clientId", _E.TASK, _R.SELF),
        _F("projectId", _E.PROJECT, _R.REFERENCE),
        _F("assigneeId", _E.TEAM, _R.REFERENCE),
    ),
    OperationKind.UPDATE_TASK: (
        _F("id", _E.TASK, _R.TARGET),
        _F("patch.projectId", _E.PROJECT, _R.REFERENCE),
        _F("patch.assigneeId", _E.TEAM, _R.REFERENCE),
    ),
    OperationKind.DELETE_TASK: (_F("id", _E.TASK, _R.TARGET),),
    OperationKind.CREATE_PROJECT: (_F("clientId", _E.PROJECT, _R.SELF),),
    OperationKind.UPDATE_PROJECT: (_F("id", _E.PROJECT, _R.TARGET),),
    OperationKind.DELETE_PROJECT: (_F("id", _E.PROJECT, _R.TARGET),),
    OperationKind.CREATE_TEAM: (_F("clientId", _E.TEAM, _R.SELF),),
    OperationKind.UPDATE_TEAM: (_F("id", _E.TEAM, _R.TARGET),),
    OperationKind.DELETE_TEAM: (_F("id", _E.TEAM, _R.TARGET),),
    OperationKind.CREATE_COMMENT: (
        _F("clientId", _E.COMMENT, _R.SELF),
        _F("taskId", _E.TASK, _R.REFERENCE),
    ),
}

KIND_ENTITY: Dict[OperationKind, EntityType] = {
    kind: next(rule.entity_type for rule in rules if rule.role is not _R.REFERENCE)
    for kind, rules in DEPENDENCY_SCHEMA.items()
}

CREATE_KINDS = frozenset(
    kind
    for kind, rules in DEPENDENCY_SCHEMA.items()
    if any(rule.role is _R.SELF for rule in rules)
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_path(data: Dict[str, Any], path: str) -> Any:
    current: Any = data
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


def set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split(".")
    current = data
    for key in keys[:-1]:
        current = current.setdefault(key, {})
    current[keys[-1]] = value


def pop_path(data: Dict[str, Any], path: str) -> Any:
    keys = path.split(".")
    current: Any = data
    for key in keys[:-1]:
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    if not isinstance(current, dict):
        return None
    return current.pop(keys[-1], None)


def extract_ref(data: Dict[str, Any], path: str) -> Optional[Ref]:
    """Move an identifier out of ``data`` into a ref.

    A value that is not an identifier, such as an explicit ``None`` that
    clears the field, stays in the payload.
    """
    ref = parse_ref(get_path(data, path))
    if ref is not None:
        pop_path(data, path)
    return ref


class Operation(BaseModel):
    """One queued client-side mutation.

    ``payload`` holds the kind-specific wire body without identifiers; every
    identifier lives in ``refs`` keyed by its declared field path.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: OperationKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    refs: Dict[str, EntityRef] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    retry_count: int = Field(default=0, ge=0)
    status: OperationStatus = OperationStatus.PENDING
    last_error: Optional[str] = None

    @model_validator(mode="after")
    def _check_refs(self) -> "Operation":
        rules = {rule.path: rule for rule in DEPENDENCY_SCHEMA[self.kind]}
        undeclared = set(self.refs) - set(rules)
        if undeclared:
            raise ValueError(
                f"{self.kind.value} does not declare identifier fields "
                f"{sorted(undeclared)}"
            )
        for rule in rules.values():
            ref = self.refs.get(rule.path)
            if rule.role is FieldRole.SELF and not isinstance(ref, TemporaryId):
                raise ValueError(f"{self.kind.value} requires a temporary clientId")
            if rule.role is FieldRole.TARGET and ref is None:
                raise ValueError(f"{self.kind.value} requires a target id")
        return self

    @property
    def entity_type(self) -> EntityType:
        return KIND_ENTITY[self.kind]

    @property
    def is_create(self) -> bool:
        return self.kind in CREATE_KINDS

    @property
    def rules(self) -> Tuple[FieldRule, ...]:
        return DEPENDENCY_SCHEMA[self.kind]

    @property
    def client_ref(self) -> Optional[TemporaryId]:
        ref = self.refs.get("clientId")
        return ref if isinstance(ref, TemporaryId) else None

    @property
    def target_ref(self) -> Optional[Ref]:
        return self.refs.get("id")

    def temporary_dependencies(self) -> List[Tuple[FieldRule, TemporaryId]]:
        """Temporary identifiers this operation needs resolved before dispatch"""
        pending = []
        for rule in self.rules:
            if rule.role is FieldRole.SELF:
                continue
            ref = self.refs.get(rule.path)
            if isinstance(ref, TemporaryId):
                pending.append((rule, ref))
        return pending

    def render(self) -> Dict[str, Any]:
        """Payload with every identifier written back at its field path."""
        body = copy.deepcopy(self.payload)
        for path, ref in self.refs.items():
            set_path(body, path, ref.wire)
        return body

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_legacy(cls, raw: Dict[str, Any]) -> "Operation":
        """Import an entry written by the browser client's untyped queue.

        Legacy entries look like ``{"op", "payload", "createdAt",
        "__retryCount"}`` with identifiers inlined as ``tmp_`` strings.
        """
        kind = OperationKind(raw["op"])
        payload = copy.deepcopy(raw.get("payload") or {})
        refs: Dict[str, Ref] = {}

        for rule in DEPENDENCY_SCHEMA[kind]:
            if rule.role is FieldRole.SELF:
                client_value = payload.pop("clientId", None)
                own_value = payload.pop("id", None)
                ref = parse_ref(client_value or own_value)
                if not isinstance(ref, TemporaryId):
                    ref = TemporaryId.mint()
            else:
                ref = extract_ref(payload, rule.path)
            if ref is not None:
                refs[rule.path] = ref

        fields: Dict[str, Any] = {
            "kind": kind,
            "payload": payload,
            "refs": refs,
            "retry_count": int(raw.get("__retryCount") or 0),
        }
        if raw.get("createdAt"):
            fields["created_at"] = raw["createdAt"]
        return cls(**fields)


class DeadLetterReason(str, Enum):
    UNRECOVERABLE = "unrecoverable"
    EXHAUSTED = "exhausted"


class DeadLetterRecord(BaseModel):
    """An abandoned operation kept for inspection."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    operation: Operation
    error: str
    retry_count: int = Field(default=0, ge=0)
    reason: DeadLetterReason = DeadLetterReason.UNRECOVERABLE
    timestamp: datetime = Field(default_factory=_utcnow)


class QueueDocument(BaseModel):
    """Persisted shape of the active queue."""

    version: int = SCHEMA_VERSION
    operations: List[Operation] = Field(default_factory=list)


class DeadLetterDocument(BaseModel):
    """Persisted shape of the dead-letter list."""

    version: int = SCHEMA_VERSION
    records: List[DeadLetterRecord] = Field(default_factory=list)
