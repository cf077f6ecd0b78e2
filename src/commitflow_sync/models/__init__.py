"""
Data models for the CommitFlow sync engine.
"""

from .entities import (
    ENTITY_CLASSES,
    Comment,
    EntityRecord,
    EntityType,
    Project,
    Task,
    TeamMember,
)
from .identifiers import (
    TEMP_PREFIX,
    CanonicalId,
    EntityRef,
    Ref,
    TemporaryId,
    is_temporary,
    parse_ref,
    to_wire,
)

__all__ = [
    "EntityType",
    "EntityRecord",
    "Task",
    "Project",
    "TeamMember",
    "Comment",
    "ENTITY_CLASSES",
    "TEMP_PREFIX",
    "TemporaryId",
    "CanonicalId",
    "EntityRef",
    "Ref",
    "parse_ref",
    "to_wire",
    "is_temporary",
]
