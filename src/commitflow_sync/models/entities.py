"""
Entity records held by the optimistic mirror.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

from .identifiers import Ref, parse_ref, to_wire


class EntityType(str, Enum):
    """Kinds of entities the sync engine mirrors"""

    TASK = "task"
    PROJECT = "project"
    TEAM = "team"
    COMMENT = "comment"


def _norm(value: Any) -> str:
    return str(value or "").strip().lower()


@dataclass
class EntityRecord:
    """Common shape of mirrored entities.

    ``wire_fields`` maps attribute names to the camelCase keys used by the
    REST API. Attributes listed in ``reference_fields`` hold identifiers of
    other entities and may be temporary until their create is confirmed.
    """

    entity_type: ClassVar[EntityType]
    wire_fields: ClassVar[Dict[str, str]] = {}
    reference_fields: ClassVar[Tuple[str, ...]] = ()

    id: Ref
    client_id: Optional[Ref] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _attr_for(cls, wire_key: str) -> Optional[str]:
        for attr, key in cls.wire_fields.items():
            if key == wire_key:
                return attr
        return None

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "EntityRecord":
        """Build a record from an API response body"""
        ref = parse_ref(data.get("id"))
        if ref is None:
            raise ValueError(f"{cls.__name__} record without id: {data!r}")

        record = cls(id=ref, client_id=parse_ref(data.get("clientId")))
        record.apply_changes(data)
        return record

    def to_wire(self) -> Dict[str, Any]:
        """Convert to the JSON shape used by the REST API"""
        data = dict(self.extra)
        data["id"] = self.id.wire
        if self.client_id is not None:
            data["clientId"] = self.client_id.wire
        for attr, key in self.wire_fields.items():
            value = getattr(self, attr)
            data[key] = to_wire(value) if attr in self.reference_fields else value
        return data

    def apply_changes(self, changes: Dict[str, Any]) -> None:
        """Merge a wire-keyed patch into this record"""
        for key, value in changes.items():
            if key in ("id", "clientId"):
                continue
            attr = self._attr_for(key)
            if attr is None:
                self.extra[key] = value
            elif attr in self.reference_fields:
                setattr(self, attr, parse_ref(value))
            else:
                setattr(self, attr, value)

    def references(self) -> List[Ref]:
        return [
            ref
            for ref in (getattr(self, attr) for attr in self.reference_fields)
            if ref is not None
        ]

    def replace_reference(self, old: Ref, new: Ref) -> bool:
        """Point every relationship field holding ``old`` at ``new``"""
        changed = False
        for attr in self.reference_fields:
            if getattr(self, attr) == old:
                setattr(self, attr, new)
                changed = True
        return changed

    def signature(self) -> str:
        raise NotImplementedError


@dataclass
class Task(EntityRecord):
    """Project task"""

    entity_type: ClassVar[EntityType] = EntityType.TASK
    wire_fields: ClassVar[Dict[str, str]] = {
        "title": "title",
        "description": "description",
        "status": "status",
        "priority": "priority",
        "project_id": "projectId",
        "assignee_id": "assigneeId",
        "assignee_name": "assigneeName",
        "start_date": "startDate",
        "due_date": "dueDate",
    }
    reference_fields: ClassVar[Tuple[str, ...]] = ("project_id", "assignee_id")

    title: str = ""
    description: Optional[str] = None
    status: str = "todo"
    priority: Optional[str] = "low"
    project_id: Optional[Ref] = None
    assignee_id: Optional[Ref] = None
    assignee_name: Optional[str] = None
    start_date: Optional[str] = None
    due_date: Optional[str] = None

    def signature(self) -> str:
        return "|".join(
            [
                _norm(self.title),
                to_wire(self.project_id) or "",
                str(self.start_date or ""),
                str(self.due_date or ""),
            ]
        )


@dataclass
class Project(EntityRecord):
    """Project inside a workspace"""

    entity_type: ClassVar[EntityType] = EntityType.PROJECT
    wire_fields: ClassVar[Dict[str, str]] = {
        "name": "name",
        "description": "description",
        "workspace_id": "workspaceId",
    }
    reference_fields: ClassVar[Tuple[str, ...]] = ("workspace_id",)

    name: str = ""
    description: Optional[str] = None
    workspace_id: Optional[Ref] = None

    def signature(self) -> str:
        return f"{_norm(self.name)}|{to_wire(self.workspace_id) or ''}"


@dataclass
class TeamMember(EntityRecord):
    """Workspace team member"""

    entity_type: ClassVar[EntityType] = EntityType.TEAM
    wire_fields: ClassVar[Dict[str, str]] = {
        "name": "name",
        "role": "role",
        "email": "email",
        "phone": "phone",
        "photo": "photo",
        "workspace_id": "workspaceId",
        "is_admin": "isAdmin",
    }
    reference_fields: ClassVar[Tuple[str, ...]] = ("workspace_id",)

    name: str = ""
    role: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    photo: Optional[str] = None
    workspace_id: Optional[Ref] = None
    is_admin: bool = False

    def signature(self) -> str:
        if self.email:
            return f"email:{_norm(self.email)}"
        return f"name:{_norm(self.name)}"


@dataclass
class Comment(EntityRecord):
    """Comment on a task"""

    entity_type: ClassVar[EntityType] = EntityType.COMMENT
    wire_fields: ClassVar[Dict[str, str]] = {
        "task_id": "taskId",
        "author": "author",
        "body": "body",
        "attachments": "attachments",
        "created_at": "createdAt",
    }
    reference_fields: ClassVar[Tuple[str, ...]] = ("task_id",)

    task_id: Optional[Ref] = None
    author: str = ""
    body: str = ""
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[str] = None

    def signature(self) -> str:
        return "|".join(
            [to_wire(self.task_id) or "", _norm(self.author), _norm(self.body)]
        )


ENTITY_CLASSES: Dict[EntityType, Type[EntityRecord]] = {
    EntityType.TASK: Task,
    EntityType.PROJECT: Project,
    EntityType.TEAM: TeamMember,
    EntityType.COMMENT: Comment,
}
