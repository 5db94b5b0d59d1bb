"""Tests for the three-way merge."""

import os
from datetime import datetime, timedelta, timezone

import pytest

from trackline.errors import ValidationError
from trackline.models import Issue, IssueType, Status
from trackline.sync.merge import (
    ConflictResolution, ConflictType, MergeContext, MergeOutcome, apply_merge, load_base_snapshot,
    load_merge_context, merge_issue, save_base_snapshot, three_way_merge,
)
from trackline.sync.jsonl import serialize_issue

T0 = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def _make_issue(id: str, title: str = "Test", minutes: int = 0, **kwargs) -> Issue:
    defaults = dict(
        id=id, title=title, status=Status.OPEN, priority=2, issue_type=IssueType.TASK,
        created_at=T0, updated_at=T0 + timedelta(minutes=minutes),
    )
    defaults.update(kwargs)
    return Issue(**defaults)


class TestMergeIssue:
    def test_nothing(self):
        assert merge_issue(None, None, None).outcome is MergeOutcome.NO_ACTION

    def test_deleted_both_sides(self):
        base = _make_issue("test-aaa")
        assert merge_issue(base, None, None).outcome is MergeOutcome.DELETE

    def test_added_on_one_side(self):
        local = _make_issue("test-aaa")
        result = merge_issue(None, local, None)
        assert result.outcome is MergeOutcome.KEEP
        assert result.issue is local
        external = _make_issue("test-bbb")
        assert merge_issue(None, None, external).issue is external

    def test_unchanged_side_takes_other(self):
        base = _make_issue("test-aaa")
        local = _make_issue("test-aaa", "Local edit", minutes=5)
        assert merge_issue(base, local, _make_issue("test-aaa")).issue is local
        external = _make_issue("test-aaa", "External edit", minutes=5)
        assert merge_issue(base, _make_issue("test-aaa"), external).issue is external

    @pytest.mark.parametrize("strategy,winner", [
        (ConflictResolution.PREFER_LOCAL, "local"),
        (ConflictResolution.PREFER_EXTERNAL, "external"),
        (ConflictResolution.PREFER_NEWER, "external"),
        (ConflictResolution.MANUAL, "external"),
    ])
    def test_both_modified(self, strategy, winner):
        base = _make_issue("test-aaa")
        local = _make_issue("test-aaa", "local", minutes=1)
        external = _make_issue("test-aaa", "external", minutes=2)
        result = merge_issue(base, local, external, strategy)
        assert result.outcome is MergeOutcome.KEEP_WITH_NOTE
        assert result.issue.title == winner
        assert "both modified" in result.note

    def test_manual_flags_review(self):
        base = _make_issue("test-aaa")
        result = merge_issue(base, _make_issue("test-aaa", "a", minutes=3),
                             _make_issue("test-aaa", "b", minutes=1), ConflictResolution.MANUAL)
        assert result.issue.title == "a"
        assert "review recommended" in result.note

    def test_external_delete_of_untouched_local(self):
        base = _make_issue("test-aaa")
        assert merge_issue(base, _make_issue("test-aaa"), None).outcome is MergeOutcome.DELETE

    def test_external_delete_vs_local_modify(self):
        base = _make_issue("test-aaa")
        local = _make_issue("test-aaa", "edited", minutes=1)
        kept = merge_issue(base, local, None)
        assert kept.outcome is MergeOutcome.KEEP_WITH_NOTE
        assert kept.issue is local
        assert merge_issue(base, local, None,
                           ConflictResolution.PREFER_EXTERNAL).outcome is MergeOutcome.DELETE
        conflict = merge_issue(base, local, None, ConflictResolution.MANUAL)
        assert conflict.outcome is MergeOutcome.CONFLICT
        assert conflict.conflict is ConflictType.DELETE_VS_MODIFY

    def test_local_delete_vs_external_modify(self):
        base = _make_issue("test-aaa")
        external = _make_issue("test-aaa", "edited", minutes=1)
        assert merge_issue(base, None, external).outcome is MergeOutcome.DELETE
        kept = merge_issue(base, None, external, ConflictResolution.PREFER_EXTERNAL)
        assert kept.issue is external

    def test_convergent_creation(self):
        local = _make_issue("test-aaa", "mine", minutes=2)
        external = _make_issue("test-aaa", "theirs", minutes=1)
        assert merge_issue(None, local, external).issue is local
        assert merge_issue(None, local, external,
                           ConflictResolution.PREFER_EXTERNAL).issue is external
        assert merge_issue(None, local, external,
                           ConflictResolution.PREFER_NEWER).issue is local

    def test_convergent_identical(self):
        result = merge_issue(None, _make_issue("test-aaa"), _make_issue("test-aaa"))
        assert result.outcome is MergeOutcome.KEEP


class TestThreeWayMerge:
    def test_report(self):
        base = {"test-aaa": _make_issue("test-aaa"), "test-bbb": _make_issue("test-bbb")}
        left = {"test-aaa": _make_issue("test-aaa", "local", minutes=1),
                "test-bbb": _make_issue("test-bbb"),
                "test-new": _make_issue("test-new")}
        right = {"test-aaa": _make_issue("test-aaa", "external", minutes=2)}
        report = three_way_merge(MergeContext(base, left, right))

        assert sorted(i.id for i in report.kept) == ["test-aaa", "test-new"]
        assert report.deleted == ["test-bbb"]
        assert [n[0] for n in report.notes] == ["test-aaa"]
        assert not report.has_conflicts()
        assert report.total_actions() == 3

    def test_tombstone_protection(self):
        right = {"test-aaa": _make_issue("test-aaa", minutes=5)}
        report = three_way_merge(MergeContext({}, {}, right), tombstones={"test-aaa"})
        assert report.tombstone_protected == ["test-aaa"]
        assert report.kept == []

    def test_conflicts_collected(self):
        base = {"test-aaa": _make_issue("test-aaa")}
        left = {"test-aaa": _make_issue("test-aaa", "edited", minutes=1)}
        report = three_way_merge(MergeContext(base, left, {}), ConflictResolution.MANUAL)
        assert report.conflicts == [("test-aaa", ConflictType.DELETE_VS_MODIFY)]


class TestBaseSnapshot:
    def test_absent(self, data_dir):
        assert load_base_snapshot(data_dir) == {}

    def test_save_and_load(self, data_dir):
        issues = {"test-bbb": _make_issue("test-bbb", "second"),
                  "test-aaa": _make_issue("test-aaa", "first")}
        path = save_base_snapshot(issues, data_dir)
        lines = path.read_text().splitlines()
        assert '"id":"test-aaa"' in lines[0]
        loaded = load_base_snapshot(data_dir)
        assert sorted(loaded) == ["test-aaa", "test-bbb"]
        assert loaded["test-aaa"].title == "first"
        assert loaded["test-aaa"].content_hash == issues["test-aaa"].compute_content_hash()


class TestConflictResolutionParse:
    @pytest.mark.parametrize("raw,expected", [
        ("prefer-local", ConflictResolution.PREFER_LOCAL),
        ("PREFER_NEWER", ConflictResolution.PREFER_NEWER),
        (" manual ", ConflictResolution.MANUAL),
    ])
    def test_parse(self, raw, expected):
        assert ConflictResolution.parse(raw) is expected

    def test_invalid(self):
        with pytest.raises(ValidationError):
            ConflictResolution.parse("coin-flip")


class TestApplyMerge:
    def test_external_changes_reach_the_store(self, store, data_dir):
        store.create_issue(_make_issue("test-aaa", "Original"), "alice")
        store.create_issue(_make_issue("test-bbb", "Doomed"), "alice")
        save_base_snapshot({i.id: i for i in store.iter_issues_for_export()}, data_dir)

        jsonl_path = os.path.join(data_dir, "issues.jsonl")
        with open(jsonl_path, "w", encoding="utf-8") as f:
            f.write(serialize_issue(_make_issue("test-aaa", "Edited", minutes=30)) + "\n")
            f.write(serialize_issue(_make_issue("test-ccc", "Theirs")) + "\n")

        context = load_merge_context(store, jsonl_path, data_dir)
        assert sorted(context.right) == ["test-aaa", "test-ccc"]
        report = three_way_merge(context, ConflictResolution.PREFER_NEWER,
                                 context.base_tombstones())
        changed = apply_merge(store, context, report, "alice")

        assert changed == ["test-aaa", "test-bbb", "test-ccc"]
        assert store.get_issue("test-aaa").title == "Edited"
        assert store.get_issue("test-bbb").status == Status.TOMBSTONE
        assert store.get_issue("test-ccc").title == "Theirs"
        assert set(store.get_dirty_issue_ids()) >= {"test-aaa", "test-ccc"}

    def test_unchanged_issues_are_not_rewritten(self, store, data_dir):
        store.create_issue(_make_issue("test-aaa"), "alice")
        store.clear_all_dirty()
        jsonl_path = os.path.join(data_dir, "issues.jsonl")
        with open(jsonl_path, "w", encoding="utf-8") as f:
            f.write(serialize_issue(store.get_issue("test-aaa")) + "\n")

        context = load_merge_context(store, jsonl_path, data_dir)
        report = three_way_merge(context)
        assert apply_merge(store, context, report, "alice") == []
        assert store.get_dirty_issue_ids() == []
