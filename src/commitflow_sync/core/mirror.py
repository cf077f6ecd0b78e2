"""
Optimistic in-memory mirror of tasks, projects, team members and comments.

The UI reads from the mirror and mutates it only through the sync engine, so
every optimistic change has a matching queued operation.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..models.entities import ENTITY_CLASSES, EntityRecord, EntityType
from ..models.identifiers import CanonicalId, Ref, TemporaryId

IdentifierListener = Callable[[EntityType, TemporaryId, CanonicalId], None]
ChangeListener = Callable[[EntityType], None]
SignatureGuard = Callable[[TemporaryId, CanonicalId], bool]
ServerRecord = Union[EntityRecord, Dict[str, Any]]


class MutationAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class LocalMutation:
    """A change applied to the mirror before the server confirms it.

    ``changes`` uses the REST API's camelCase keys.
    """

    action: MutationAction
    changes: Dict[str, Any] = field(default_factory=dict)
    target: Optional[Ref] = None


class EntityMirror:
    """Per-entity-type collections of optimistic and confirmed records."""

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)
        self._records: Dict[EntityType, List[EntityRecord]] = {
            entity_type: [] for entity_type in EntityType
        }
        self._identifier_listeners: List[IdentifierListener] = []
        self._change_listeners: List[ChangeListener] = []
        self._signature_guard: Optional[SignatureGuard] = None

    # Subscriptions

    def on_identifier_changed(self, listener: IdentifierListener) -> Callable[[], None]:
        """Register a callback fired when a temporary record gets its canonical id."""
        self._identifier_listeners.append(listener)
        return lambda: self._identifier_listeners.remove(listener)

    def guard_signature_matches(self, guard: Optional[SignatureGuard]) -> None:
        """Veto content-signature matches, e.g. for temps whose create is queued.

        Matches by clientId are not affected.
        """
        self._signature_guard = guard

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._change_listeners.append(listener)
        return lambda: self._change_listeners.remove(listener)

    def _notify(self, entity_type: EntityType) -> None:
        for listener in list(self._change_listeners):
            listener(entity_type)

    # Reads

    def all(self, entity_type: EntityType) -> List[EntityRecord]:
        return list(self._records[entity_type])

    def get(self, entity_type: EntityType, ref: Ref) -> Optional[EntityRecord]:
        index = self._index_of(entity_type, ref)
        return self._records[entity_type][index] if index is not None else None

    def _index_of(self, entity_type: EntityType, ref: Optional[Ref]) -> Optional[int]:
        if ref is None:
            return None
        for index, record in enumerate(self._records[entity_type]):
            if record.id == ref:
                return index
        return None

    # Writes

    def apply_local(
        self, entity_type: EntityType, mutation: LocalMutation
    ) -> Optional[EntityRecord]:
        """Apply a mutation immediately.

        Creates mint a temporary identifier and put the record first. Returns
        the affected record, or None for deletes.
        """
        records = self._records[entity_type]

        if mutation.action is MutationAction.CREATE:
            temp = TemporaryId.mint()
            record = ENTITY_CLASSES[entity_type](id=temp, client_id=temp)
            record.apply_changes(mutation.changes)
            records.insert(0, record)
            result: Optional[EntityRecord] = record

        elif mutation.action is MutationAction.UPDATE:
            index = self._index_of(entity_type, mutation.target)
            if index is None:
                raise KeyError(f"No {entity_type.value} with id {mutation.target}")
            records[index].apply_changes(mutation.changes)
            result = records[index]

        else:
            index = self._index_of(entity_type, mutation.target)
            if index is None:
                self.logger.debug(
                    f"Delete of unknown {entity_type.value} {mutation.target} ignored"
                )
            else:
                del records[index]
            result = None

        self._notify(entity_type)
        return result

    def merge_server_result(
        self,
        entity_type: EntityType,
        temp_id: Optional[Ref],
        canonical: ServerRecord,
    ) -> EntityRecord:
        """Replace the optimistic record with the server's version.

        Matches by canonical id, then ``temp_id``, then the server record's
        ``clientId``, then by content signature among temporary records. A
        still-temporary copy is dropped even when the canonical record is
        already present.
        """
        record = self._coerce(entity_type, canonical)
        records = self._records[entity_type]

        pending = self._index_of(entity_type, temp_id)
        if pending is None:
            pending = self._index_of(entity_type, record.client_id)

        index = self._index_of(entity_type, record.id)
        if index is None:
            index = pending
        if index is None:
            index = self._index_by_signature(entity_type, record)

        if pending is not None:
            old_id = records[pending].id
        elif index is not None:
            old_id = records[index].id
        else:
            old_id = temp_id

        if index is None:
            records.insert(0, record)
        else:
            records[index] = record
            self._records[entity_type] = [
                existing
                for i, existing in enumerate(records)
                if i == index or (i != pending and existing.id != record.id)
            ]

        if old_id is not None and old_id != record.id:
            self._identifier_changed(entity_type, old_id, record.id)

        self._notify(entity_type)
        return record

    def merge_snapshot(
        self,
        entity_type: EntityType,
        server_records: Iterable[ServerRecord],
        scope: Optional[Callable[[EntityRecord], bool]] = None,
    ) -> int:
        """Replace confirmed records in ``scope`` with a fetched server snapshot.

        Temporary records survive unless the snapshot already contains them,
        in which case they are resolved. A clientId match always resolves. A
        signature match only considers incoming records without a clientId
        whose id is not already mirrored, and each incoming record resolves at
        most one temporary record.
        """
        incoming = [self._coerce(entity_type, item) for item in server_records]
        by_client = {item.client_id: item for item in incoming if item.client_id}
        mirrored = {
            existing.id
            for existing in self._records[entity_type]
            if isinstance(existing.id, CanonicalId)
        }
        by_signature = {
            item.signature(): item
            for item in incoming
            if item.client_id is None and item.id not in mirrored
        }
        claimed = set()

        survivors: List[EntityRecord] = []
        outside: List[EntityRecord] = []
        resolved = []
        for existing in self._records[entity_type]:
            if isinstance(existing.id, TemporaryId):
                match = by_client.get(existing.id)
                if match is None:
                    candidate = by_signature.get(existing.signature())
                    if candidate is not None and candidate.id not in claimed:
                        if self._signature_allowed(existing.id, candidate.id):
                            match = candidate
                if match is None:
                    survivors.append(existing)
                else:
                    claimed.add(match.id)
                    resolved.append((existing.id, match.id))
            elif scope is not None and not scope(existing):
                outside.append(existing)

        merged: List[EntityRecord] = []
        seen = set()
        for item in survivors + incoming + outside:
            if item.id in seen:
                continue
            seen.add(item.id)
            merged.append(item)
        self._records[entity_type] = merged

        for old_id, new_id in resolved:
            self._identifier_changed(entity_type, old_id, new_id)

        self._notify(entity_type)
        return len(incoming)

    def replace_reference(self, old: Ref, new: Ref) -> int:
        """Rewrite relationship fields across every collection"""
        changed = 0
        for records in self._records.values():
            for record in records:
                if record.replace_reference(old, new):
                    changed += 1
        return changed

    def _identifier_changed(self, entity_type: EntityType, old: Ref, new: Ref) -> None:
        changed = self.replace_reference(old, new)
        self.logger.debug(
            f"{entity_type.value} {old} is now {new}; {changed} references updated"
        )
        if isinstance(old, TemporaryId) and isinstance(new, CanonicalId):
            for listener in list(self._identifier_listeners):
                listener(entity_type, old, new)

    def _signature_allowed(self, temp: TemporaryId, canonical: Ref) -> bool:
        if self._signature_guard is None or not isinstance(canonical, CanonicalId):
            return True
        return self._signature_guard(temp, canonical)

    def _index_by_signature(
        self, entity_type: EntityType, record: EntityRecord
    ) -> Optional[int]:
        if record.client_id is not None:
            return None
        signature = record.signature()
        for index, existing in enumerate(self._records[entity_type]):
            if not isinstance(existing.id, TemporaryId):
                continue
            if existing.signature() != signature:
                continue
            if self._signature_allowed(existing.id, record.id):
                return index
        return None

    @staticmethod
    def _coerce(entity_type: EntityType, item: ServerRecord) -> EntityRecord:
        record = (
            item
            if isinstance(item, EntityRecord)
            else ENTITY_CLASSES[entity_type].from_wire(item)
        )
        if not isinstance(record.id, CanonicalId):
            raise ValueError(f"Server {entity_type.value} record has no canonical id")
        return record
