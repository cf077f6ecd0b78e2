"""
Temporary → canonical identifier reconciliation.

When a create is confirmed, every still-queued operation that refers to the
temporary identifier must be rewritten before it is dispatched. The rewrite is
driven entirely by ``DEPENDENCY_SCHEMA``.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from ..models.entities import EntityType
from ..models.identifiers import CanonicalId, TemporaryId
from .operations import FieldRole, Operation

logger = logging.getLogger(__name__)


class IdentifierMap:
    """Write-once translation table, kept for the lifetime of the engine."""

    def __init__(self) -> None:
        self._entries: Dict[TemporaryId, Tuple[CanonicalId, EntityType]] = {}

    def record(
        self, temp: TemporaryId, canonical: CanonicalId, entity_type: EntityType
    ) -> bool:
        """Store a mapping. Returns False if ``temp`` was already mapped."""
        existing = self._entries.get(temp)
        if existing is None:
            self._entries[temp] = (canonical, entity_type)
            logger.debug(f"Resolved {entity_type.value} {temp.wire} -> {canonical.value}")
            return True

        if existing[0] != canonical:
            logger.warning(
                f"Ignoring second resolution of {temp.wire}: already mapped to "
                f"{existing[0].value}, got {canonical.value}"
            )
        return False

    def resolve(
        self, temp: TemporaryId, entity_type: Optional[EntityType] = None
    ) -> Optional[CanonicalId]:
        entry = self._entries.get(temp)
        if entry is None:
            return None
        if entity_type is not None and entry[1] is not entity_type:
            return None
        return entry[0]

    def maps_to(self, canonical: CanonicalId) -> bool:
        return any(entry[0] == canonical for entry in self._entries.values())

    def items(self) -> List[Tuple[TemporaryId, CanonicalId]]:
        return [(temp, entry[0]) for temp, entry in self._entries.items()]

    def __contains__(self, temp: object) -> bool:
        return temp in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class QueueReconciler:
    """Rewrites queued operations' identifier fields using an ``IdentifierMap``."""

    def __init__(self, id_map: IdentifierMap) -> None:
        self.id_map = id_map

    def rewrite(
        self,
        operations: Iterable[Operation],
        temp: TemporaryId,
        canonical: CanonicalId,
        entity_type: Optional[EntityType] = None,
    ) -> int:
        """Replace ``temp`` with ``canonical`` in every declared field.

        A create's own ``clientId`` is its idempotency key and is never
        rewritten. Returns the number of fields changed; a second call with
        the same arguments changes nothing.
        """
        changed = 0
        for operation in operations:
            for rule in operation.rules:
                if rule.role is FieldRole.SELF:
                    continue
                if entity_type is not None and rule.entity_type is not entity_type:
                    continue
                if operation.refs.get(rule.path) == temp:
                    operation.refs[rule.path] = canonical
                    changed += 1
                    logger.debug(
                        f"Rewrote {operation.kind.value}.{rule.path} "
                        f"{temp.wire} -> {canonical.value} (op {operation.id})"
                    )
        return changed

    def resolve_pending(self, operation: Operation) -> int:
        """Resolve one operation's temporary references through the map."""
        changed = 0
        for rule, ref in operation.temporary_dependencies():
            canonical = self.id_map.resolve(ref, rule.entity_type)
            if canonical is not None:
                operation.refs[rule.path] = canonical
                changed += 1
        return changed

    def resolve_all(self, operations: Iterable[Operation]) -> int:
        return sum(self.resolve_pending(operation) for operation in operations)
