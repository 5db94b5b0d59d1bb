"""Tests for data models, validation and content hashing."""

from datetime import datetime, timedelta, timezone

import pytest

from trackline.errors import ValidationError
from trackline.hashing import content_hash
from trackline.models import (
    Comment, Dependency, DepType, Issue, IssueType, IssueUpdate, Status, UNSET,
    format_timestamp, parse_external_ref, parse_timestamp, validate_label,
)

T0 = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def _make_issue(id: str = "test-abc", title: str = "Test", **kwargs) -> Issue:
    defaults = dict(
        id=id, title=title, status=Status.OPEN, priority=2,
        issue_type=IssueType.TASK, created_at=T0, updated_at=T0,
    )
    defaults.update(kwargs)
    return Issue(**defaults)


class TestValidation:
    def test_valid_issue(self):
        _make_issue().validate()

    def test_collects_every_error(self):
        issue = _make_issue(title="", priority=9, status="two words")
        with pytest.raises(ValidationError) as exc:
            issue.validate()
        fields = {e.field for e in exc.value.field_errors}
        assert {"title", "priority", "status"} <= fields

    def test_title_length(self):
        assert _make_issue(title="x" * 500).validation_errors() == []
        errors = _make_issue(title="x" * 501).validation_errors()
        assert [e.field for e in errors] == ["title"]

    def test_bool_is_not_a_priority(self):
        errors = _make_issue(priority=True).validation_errors()
        assert [e.field for e in errors] == ["priority"]

    def test_closed_needs_closed_at(self):
        errors = _make_issue(status=Status.CLOSED).validation_errors()
        assert [e.field for e in errors] == ["closed_at"]
        _make_issue(status=Status.CLOSED, closed_at=T0).validate()

    def test_open_cannot_have_closed_at(self):
        errors = _make_issue(closed_at=T0).validation_errors()
        assert [e.field for e in errors] == ["closed_at"]

    def test_tombstone_needs_deleted_at(self):
        errors = _make_issue(status=Status.TOMBSTONE, closed_at=T0).validation_errors()
        assert [e.field for e in errors] == ["deleted_at"]

    def test_updated_before_created(self):
        errors = _make_issue(updated_at=T0 - timedelta(seconds=1)).validation_errors()
        assert [e.field for e in errors] == ["updated_at"]

    def test_external_ref_whitespace(self):
        errors = _make_issue(external_ref="gh 12").validation_errors()
        assert [e.field for e in errors] == ["external_ref"]

    def test_bad_id(self):
        errors = _make_issue(id="not an id").validation_errors()
        assert [e.field for e in errors] == ["id"]

    def test_custom_status_and_type_allowed(self):
        _make_issue(status="review", issue_type="spike").validate()

    def test_comment_validation(self):
        assert Comment(author="a", text="hi").validation_errors() == []
        fields = {e.field for e in Comment(author="", text=" ").validation_errors()}
        assert fields == {"author", "text"}


class TestLabels:
    @pytest.mark.parametrize("label", ["bug", "area:sync", "p-1", "snake_case"])
    def test_valid(self, label):
        validate_label(label)

    @pytest.mark.parametrize("label", ["", "has space", "x" * 51, "emoji🙂"])
    def test_invalid(self, label):
        with pytest.raises(ValidationError):
            validate_label(label)


class TestContentHash:
    def test_stable_and_hex(self):
        issue = _make_issue()
        h = content_hash(issue)
        assert h == content_hash(issue)
        assert len(h) == 64
        assert all(c in "0123456789abcdef" for c in h)

    def test_ignores_metadata(self):
        a = _make_issue()
        b = _make_issue(updated_at=T0 + timedelta(days=1), labels=["x"], created_by="bob",
                        id="test-zzz",
                        dependencies=[Dependency("test-zzz", "test-abc", DepType.BLOCKS)])
        assert content_hash(a) == content_hash(b)

    @pytest.mark.parametrize("change", [
        {"title": "Other"}, {"description": "d"}, {"status": Status.IN_PROGRESS},
        {"priority": 0}, {"assignee": "alice"}, {"external_ref": "gh-1"},
        {"pinned": True}, {"is_template": True},
    ])
    def test_semantic_fields_change_hash(self, change):
        assert content_hash(_make_issue()) != content_hash(_make_issue(**change))

    def test_field_boundaries(self):
        a = _make_issue(title="ab", description="c")
        b = _make_issue(title="a", description="bc")
        assert content_hash(a) != content_hash(b)


class TestSerialization:
    def test_round_trip(self):
        issue = _make_issue(
            description="desc", priority=0, assignee="alice", labels=["b", "a"],
            external_ref="gh-7", due_at=T0 + timedelta(days=3),
            dependencies=[Dependency("test-abc", "test-def", DepType.BLOCKS, T0, "alice")],
            comments=[Comment(1, "test-abc", "bob", "hello", T0)],
        )
        d = issue.to_dict()
        assert d["priority"] == 0
        assert d["labels"] == ["a", "b"]
        assert "content_hash" not in d
        back = Issue.from_dict(d)
        assert back.to_dict() == d

    def test_omits_empty_fields(self):
        d = _make_issue().to_dict()
        assert set(d) == {"id", "title", "status", "priority", "issue_type",
                          "created_at", "updated_at"}

    def test_from_dict_defaults(self):
        issue = Issue.from_dict({"id": "test-abc", "title": "T", "external_ref": ""})
        assert issue.status == Status.OPEN
        assert issue.issue_type == IssueType.TASK
        assert issue.external_ref is None

    def test_dependencies_sorted(self):
        issue = _make_issue(dependencies=[
            Dependency("test-abc", "test-zzz", DepType.BLOCKS, T0),
            Dependency("test-abc", "test-aaa", DepType.RELATED, T0),
        ])
        assert [d["depends_on_id"] for d in issue.to_dict()["dependencies"]] == [
            "test-aaa", "test-zzz"]


class TestTimestamps:
    def test_zulu(self):
        assert parse_timestamp("2026-01-15T10:00:00Z") == T0

    def test_offset_normalized(self):
        assert parse_timestamp("2026-01-15T12:00:00+02:00") == T0

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-01-15 10:00:00") == T0

    def test_format_fixed_width(self):
        assert format_timestamp(T0) == "2026-01-15T10:00:00.000000Z"

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


class TestMisc:
    def test_external_ref_parsing(self):
        assert parse_external_ref("external:infra:db-ready") == ("infra", "db-ready")
        assert parse_external_ref("external:infra") is None
        assert parse_external_ref("test-abc") is None

    def test_issue_type_normalize(self):
        assert IssueType.normalize("Enhancement") == IssueType.FEATURE
        assert IssueType.normalize("BUG") == IssueType.BUG
        assert IssueType.normalize("spike") == "spike"

    def test_dep_type_classes(self):
        assert DepType.affects_ready_work(DepType.PARENT_CHILD)
        assert not DepType.seeds_blocking(DepType.PARENT_CHILD)
        assert not DepType.affects_ready_work(DepType.RELATED)

    def test_issue_update(self):
        update = IssueUpdate(title="New", assignee=None)
        assert update.changes() == {"title": "New", "assignee": None}
        assert IssueUpdate().is_empty()
        assert not UNSET
