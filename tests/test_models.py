"""
Tests for identifiers and mirrored entity records.
"""

import pytest

from src.commitflow_sync.models import (
    CanonicalId,
    Comment,
    EntityType,
    Project,
    Task,
    TeamMember,
    TemporaryId,
    is_temporary,
    parse_ref,
    to_wire,
)


class TestIdentifiers:
    """Identifier parsing and wire rendering"""

    def test_parse_temporary(self):
        ref = parse_ref("tmp_ab12")
        assert ref == TemporaryId(token="ab12")
        assert ref.wire == "tmp_ab12"
        assert is_temporary(ref)

    def test_parse_canonical(self):
        ref = parse_ref("65f0c2")
        assert ref == CanonicalId(value="65f0c2")
        assert ref.wire == "65f0c2"
        assert not is_temporary(ref)

    def test_parse_empty_values(self):
        assert parse_ref(None) is None
        assert parse_ref("") is None
        assert parse_ref("   ") is None

    def test_bare_prefix_is_not_temporary(self):
        assert parse_ref("tmp_") == CanonicalId(value="tmp_")

    def test_typed_refs_pass_through(self):
        temp = TemporaryId.mint()
        assert parse_ref(temp) is temp

    def test_mint_is_unique(self):
        tokens = {TemporaryId.mint().token for _ in range(50)}
        assert len(tokens) == 50

    def test_temporary_and_canonical_never_equal(self):
        assert TemporaryId(token="x") != CanonicalId(value="x")

    def test_refs_are_hashable(self):
        mapping = {TemporaryId(token="a"): 1, CanonicalId(value="a"): 2}
        assert mapping[TemporaryId(token="a")] == 1
        assert mapping[CanonicalId(value="a")] == 2

    def test_to_wire(self):
        assert to_wire(None) is None
        assert to_wire(TemporaryId(token="q")) == "tmp_q"


class TestEntityRecords:
    """Wire conversion and relationship handling"""

    def test_task_from_wire(self):
        task = Task.from_wire(
            {
                "id": "t1",
                "clientId": "tmp_c1",
                "title": "Write docs",
                "projectId": "tmp_p1",
                "assigneeId": "m1",
                "dueDate": "2026-11-01",
                "labels": ["docs"],
            }
        )

        assert task.id == CanonicalId(value="t1")
        assert task.client_id == TemporaryId(token="c1")
        assert task.project_id == TemporaryId(token="p1")
        assert task.assignee_id == CanonicalId(value="m1")
        assert task.due_date == "2026-11-01"
        assert task.extra == {"labels": ["docs"]}

    def test_task_to_wire(self):
        task = Task(
            id=TemporaryId(token="t"),
            client_id=TemporaryId(token="t"),
            title="Ship",
            project_id=CanonicalId(value="p1"),
        )
        data = task.to_wire()

        assert data["id"] == "tmp_t"
        assert data["clientId"] == "tmp_t"
        assert data["projectId"] == "p1"
        assert data["assigneeId"] is None
        assert data["status"] == "todo"

    def test_record_without_id_rejected(self):
        with pytest.raises(ValueError):
            Project.from_wire({"name": "No id"})

    def test_apply_changes_ignores_identity_keys(self):
        task = Task(id=CanonicalId(value="t1"), title="Old")
        task.apply_changes({"id": "other", "clientId": "tmp_x", "title": "New"})

        assert task.id == CanonicalId(value="t1")
        assert task.client_id is None
        assert task.title == "New"

    def test_replace_reference(self):
        old = TemporaryId(token="p")
        new = CanonicalId(value="p1")
        task = Task(id=CanonicalId(value="t1"), project_id=old)

        assert task.replace_reference(old, new) is True
        assert task.project_id == new
        assert task.replace_reference(old, new) is False

    def test_references(self):
        task = Task(id=CanonicalId(value="t1"), project_id=CanonicalId(value="p1"))
        assert task.references() == [CanonicalId(value="p1")]


class TestSignatures:
    """Content signatures used when a server record carries no clientId"""

    def test_task_signature_normalizes_title(self):
        project = CanonicalId(value="p1")
        a = Task(id=TemporaryId(token="a"), title="  Write Docs ", project_id=project)
        b = Task(id=CanonicalId(value="t9"), title="write docs", project_id=project)
        assert a.signature() == b.signature()

    def test_task_signature_includes_dates(self):
        a = Task(id=CanonicalId(value="1"), title="x", due_date="2026-01-01")
        b = Task(id=CanonicalId(value="2"), title="x", due_date="2026-01-02")
        assert a.signature() != b.signature()

    def test_team_signature_prefers_email(self):
        a = TeamMember(id=CanonicalId(value="1"), name="Ana", email="Ana@Example.com")
        b = TeamMember(id=CanonicalId(value="2"), name="Other", email="ana@example.com")
        assert a.signature() == b.signature()

    def test_team_signature_falls_back_to_name(self):
        member = TeamMember(id=CanonicalId(value="1"), name="Ana")
        assert member.signature() == "name:ana"

    def test_comment_signature(self):
        comment = Comment(
            id=CanonicalId(value="c1"),
            task_id=CanonicalId(value="t1"),
            author="Ana",
            body="Looks good",
        )
        assert comment.signature() == "t1|ana|looks good"

    def test_entity_types(self):
        assert Task.entity_type is EntityType.TASK
        assert Project.entity_type is EntityType.PROJECT
        assert TeamMember.entity_type is EntityType.TEAM
        assert Comment.entity_type is EntityType.COMMENT
