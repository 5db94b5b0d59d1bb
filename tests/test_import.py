"""Tests for JSONL import, collision handling and orphan policies."""

import os
from datetime import datetime, timedelta, timezone

import pytest

from trackline.errors import (
    ConflictError, ConflictMarkerError, IntegrityError, NotFoundError, UnsafePathError,
    ValidationError,
)
from trackline.models import Dependency, DepType, Issue, IssueFilter, IssueType, IssueUpdate, Status
from trackline.storage.sqlite_store import SQLiteStorage
from trackline.sync.export import ExportConfig, export_to_jsonl
from trackline.sync.history import history_dir
from trackline.sync.importer import (
    ImportAction, ImportConfig, OrphanMode, auto_import_if_needed, determine_action,
    import_from_jsonl,
)
from trackline.sync.jsonl import serialize_issue

T0 = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def _make_issue(id: str, title: str = "Test", **kwargs) -> Issue:
    defaults = dict(
        id=id, title=title, status=Status.OPEN, priority=2,
        issue_type=IssueType.TASK, created_at=T0, updated_at=T0,
    )
    defaults.update(kwargs)
    return Issue(**defaults)


def _blocks(issue_id: str, target: str) -> Dependency:
    return Dependency(issue_id, target, DepType.BLOCKS, T0)


def _write_jsonl(path: str, *issues: Issue) -> str:
    with open(path, "w", encoding="utf-8") as f:
        for issue in issues:
            f.write(serialize_issue(issue) + "\n")
    return path


@pytest.fixture
def jsonl_path(data_dir) -> str:
    return os.path.join(data_dir, "issues.jsonl")


@pytest.fixture
def config(data_dir) -> ImportConfig:
    return ImportConfig(data_dir=data_dir)


class TestRoundTrip:
    def test_export_import_export_is_identical(self, store: SQLiteStorage, open_store,
                                               data_dir, jsonl_path, config):
        store.create_issue(_make_issue("test-aaa", "First", description="d", labels=["x"],
                                       external_ref="gh-1"), "alice")
        store.create_issue(_make_issue("test-bbb", "Second", priority=0,
                                       dependencies=[_blocks("", "test-aaa")]), "alice")
        store.add_comment("test-aaa", "bob", "hello")
        store.close_issue("test-bbb", "done", "alice")
        export_to_jsonl(store, jsonl_path, ExportConfig(data_dir=data_dir))

        other = open_store()
        result = import_from_jsonl(other, jsonl_path, config)
        assert result.created == 2

        copy = os.path.join(data_dir, "copy.jsonl")
        export_to_jsonl(other, copy, ExportConfig(data_dir=data_dir, is_default_path=False))
        with open(jsonl_path, "rb") as a, open(copy, "rb") as b:
            assert a.read() == b.read()

    def test_import_twice_is_unchanged(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path, _make_issue("test-aaa"), _make_issue("test-bbb", "Other"))
        import_from_jsonl(store, jsonl_path, config)
        result = import_from_jsonl(store, jsonl_path, config)
        assert (result.created, result.updated, result.unchanged) == (0, 0, 2)

    def test_imported_issues_not_dirty(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path, _make_issue("test-aaa"))
        import_from_jsonl(store, jsonl_path, config)
        assert store.get_dirty_issue_ids() == []


class TestRejectsBadInput:
    def test_conflict_markers(self, store: SQLiteStorage, jsonl_path, config):
        with open(jsonl_path, "w") as f:
            f.write("<<<<<<< HEAD\n")
            f.write(serialize_issue(_make_issue("test-aaa")) + "\n")
            f.write("=======\n")
            f.write(serialize_issue(_make_issue("test-aaa", "Theirs")) + "\n")
            f.write(">>>>>>> feature\n")
        with pytest.raises(ConflictMarkerError) as exc:
            import_from_jsonl(store, jsonl_path, config)
        assert [m.line for m in exc.value.markers] == [1, 3, 5]
        assert store.count_issues() == 0

    def test_bad_json_line(self, store: SQLiteStorage, jsonl_path, config):
        with open(jsonl_path, "w") as f:
            f.write(serialize_issue(_make_issue("test-aaa")) + "\n")
            f.write("{not json\n")
        with pytest.raises(IntegrityError, match="line 2"):
            import_from_jsonl(store, jsonl_path, config)
        assert store.count_issues() == 0

    @pytest.mark.parametrize("record,field", [
        ('{"id":"test-bbb","title":123}', "title"),
        ('{"id":"test-bbb","title":"T","status":5}', "status"),
        ('{"id":"test-bbb","title":"T","priority":"high"}', "priority"),
        ('{"id":"test-bbb","title":"T","labels":"ui"}', "labels"),
    ])
    def test_wrong_field_type(self, store: SQLiteStorage, jsonl_path, config, record, field):
        with open(jsonl_path, "w") as f:
            f.write(serialize_issue(_make_issue("test-aaa")) + "\n")
            f.write(record + "\n")
        with pytest.raises(IntegrityError, match=f"line 2 .*{field}") as exc:
            import_from_jsonl(store, jsonl_path, config)
        assert exc.value.entity_id == jsonl_path
        assert store.count_issues() == 0

    def test_invalid_utf8(self, store: SQLiteStorage, jsonl_path, config):
        with open(jsonl_path, "wb") as f:
            f.write(serialize_issue(_make_issue("test-aaa")).encode("utf-8") + b"\n")
            f.write(b'{"id":"test-bbb","title":"\xff\xfe"}\n')
        with pytest.raises(IntegrityError, match="invalid UTF-8 at line 2"):
            import_from_jsonl(store, jsonl_path, config)
        assert store.count_issues() == 0

    def test_invalid_record_aborts_everything(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path, _make_issue("test-aaa"), _make_issue("test-bbb", priority=9))
        with pytest.raises(ValidationError) as exc:
            import_from_jsonl(store, jsonl_path, config)
        assert exc.value.entity_id == "test-bbb"
        assert store.count_issues() == 0

    def test_missing_file(self, store: SQLiteStorage, jsonl_path, config):
        with pytest.raises(NotFoundError):
            import_from_jsonl(store, jsonl_path, config)

    def test_unsafe_path(self, store: SQLiteStorage, tmp_path, config):
        path = _write_jsonl(str(tmp_path / "issues.jsonl"), _make_issue("test-aaa"))
        with pytest.raises(UnsafePathError):
            import_from_jsonl(store, path, config)

    def test_duplicate_external_ref(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path, _make_issue("test-aaa", external_ref="gh-1"),
                     _make_issue("test-bbb", "Other", external_ref="gh-1"))
        with pytest.raises(ConflictError):
            import_from_jsonl(store, jsonl_path, config)
        config.clear_duplicate_external_refs = True
        import_from_jsonl(store, jsonl_path, config)
        assert store.get_issue("test-aaa").external_ref == "gh-1"
        assert store.get_issue("test-bbb").external_ref is None

    def test_duplicate_ids_last_wins(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path, _make_issue("test-aaa", "First"),
                     _make_issue("test-aaa", "Second"))
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.created == 1
        assert store.get_issue("test-aaa").title == "Second"


class TestPrefixes:
    def test_mismatch_rejected(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path, _make_issue("other-aaa"))
        with pytest.raises(ValidationError, match="prefix"):
            import_from_jsonl(store, jsonl_path, config)

    def test_skip_validation(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path, _make_issue("other-aaa"))
        config.skip_prefix_validation = True
        import_from_jsonl(store, jsonl_path, config)
        assert store.get_issue("other-aaa") is not None

    def test_rename_on_import(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path, _make_issue("other-aaa", "Base"),
                     _make_issue("other-bbb", "Dependent",
                                 dependencies=[_blocks("other-bbb", "other-aaa")]))
        config.rename_on_import = True
        result = import_from_jsonl(store, jsonl_path, config)

        assert set(result.renamed) == {"other-aaa", "other-bbb"}
        new_aaa, new_bbb = result.renamed["other-aaa"], result.renamed["other-bbb"]
        assert new_aaa.startswith("test-") and new_bbb.startswith("test-")
        assert store.get_issue(new_aaa).external_ref == "other-aaa"
        deps = store.get_dependency_records(new_bbb)
        assert [d.depends_on_id for d in deps] == [new_aaa]
        assert set(store.get_dirty_issue_ids()) == {new_aaa, new_bbb}


class TestUpdates:
    def test_newer_record_updates(self, store: SQLiteStorage, jsonl_path, config):
        store.create_issue(_make_issue("test-aaa", "Local", labels=["old"]), "alice")
        _write_jsonl(jsonl_path, _make_issue("test-aaa", "Remote", labels=["new"],
                                             updated_at=T0 + timedelta(hours=1)))
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.updated == 1
        got = store.get_issue("test-aaa")
        assert got.title == "Remote"
        assert got.labels == ["new"]
        assert store.get_dirty_issue_ids() == []

    def test_older_record_skipped(self, store: SQLiteStorage, jsonl_path, config, clock):
        store.create_issue(_make_issue("test-aaa", "Original"), "alice")
        clock.advance(hours=2)
        store.update_issue("test-aaa", IssueUpdate(title="Local"), "alice")
        _write_jsonl(jsonl_path, _make_issue("test-aaa", "Remote",
                                             updated_at=T0 + timedelta(hours=1)))
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.skipped == 1
        assert store.get_issue("test-aaa").title == "Local"

    def test_force_upsert(self, store: SQLiteStorage, jsonl_path, config, clock):
        store.create_issue(_make_issue("test-aaa", "Original"), "alice")
        clock.advance(hours=2)
        store.update_issue("test-aaa", IssueUpdate(title="Local"), "alice")
        _write_jsonl(jsonl_path, _make_issue("test-aaa", "Remote",
                                             updated_at=T0 + timedelta(hours=1)))
        config.force_upsert = True
        import_from_jsonl(store, jsonl_path, config)
        assert store.get_issue("test-aaa").title == "Remote"

    def test_local_tombstone_wins(self, store: SQLiteStorage, jsonl_path, config):
        store.create_issue(_make_issue("test-aaa"), "alice")
        store.soft_delete("test-aaa", "alice")
        _write_jsonl(jsonl_path, _make_issue("test-aaa", "Revived",
                                             updated_at=T0 + timedelta(days=1)))
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.skipped == 1
        assert store.get_issue("test-aaa").status == Status.TOMBSTONE

    def test_expired_incoming_tombstone(self, store: SQLiteStorage, jsonl_path, config):
        gone = T0 - timedelta(days=40)
        _write_jsonl(jsonl_path, _make_issue("test-aaa"), _make_issue(
            "test-old", status=Status.TOMBSTONE, created_at=gone, updated_at=gone,
            deleted_at=gone))
        config.retention_days = 30
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.tombstone_skipped == 1
        assert store.get_issue("test-old") is None

    def test_determine_action(self):
        local = _make_issue("test-aaa")
        local.content_hash = local.compute_content_hash()
        same = _make_issue("test-aaa")
        same.content_hash = same.compute_content_hash()
        assert determine_action(same, None, False) is ImportAction.CREATE
        assert determine_action(same, local, False) is ImportAction.UNCHANGED
        newer = _make_issue("test-aaa", "New", updated_at=T0 + timedelta(seconds=1))
        assert determine_action(newer, local, False) is ImportAction.UPDATE
        older_diff = _make_issue("test-aaa", "Diff")
        older_diff.content_hash = older_diff.compute_content_hash()
        assert determine_action(older_diff, local, False) is ImportAction.SKIP
        assert determine_action(older_diff, local, True) is ImportAction.UPDATE


class TestCollisions:
    def test_content_hash_match_remaps_local(self, store: SQLiteStorage, jsonl_path, config):
        store.create_issue(_make_issue("test-loc", "Same"), "alice")
        store.create_issue(_make_issue("test-dep", "Dependent",
                                       dependencies=[_blocks("", "test-loc")]), "alice")
        _write_jsonl(jsonl_path, _make_issue("test-inc", "Same"))

        result = import_from_jsonl(store, jsonl_path, config)

        assert result.remapped == {"test-loc": "test-inc"}
        assert store.get_issue("test-loc") is None
        assert store.get_issue("test-inc").title == "Same"
        deps = store.get_dependency_records("test-dep")
        assert [d.depends_on_id for d in deps] == ["test-inc"]
        assert store.is_blocked("test-dep")

    def test_external_ref_match_remaps_local(self, store: SQLiteStorage, jsonl_path, config):
        store.create_issue(_make_issue("test-loc", "Old title", external_ref="gh-9"), "alice")
        _write_jsonl(jsonl_path, _make_issue("test-inc", "New title", external_ref="gh-9",
                                             updated_at=T0 + timedelta(hours=1)))
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.remapped == {"test-loc": "test-inc"}
        assert result.updated == 1
        assert store.get_issue("test-loc") is None
        assert store.get_issue("test-inc").title == "New title"
        assert store.find_by_external_ref("gh-9").id == "test-inc"

    def test_id_match_wins_over_hash(self, store: SQLiteStorage, jsonl_path, config):
        store.create_issue(_make_issue("test-aaa", "Same"), "alice")
        store.create_issue(_make_issue("test-bbb", "Same"), "alice")
        _write_jsonl(jsonl_path, _make_issue("test-bbb", "Same"))
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.remapped == {}
        assert result.unchanged == 1
        assert store.get_issue("test-aaa") is not None


class TestOrphans:
    def _orphan_file(self, jsonl_path: str) -> None:
        _write_jsonl(jsonl_path, _make_issue("test-aaa"),
                     _make_issue("test-bbb", dependencies=[_blocks("test-bbb", "test-zzz")]))

    def test_strict(self, store: SQLiteStorage, jsonl_path, config):
        self._orphan_file(jsonl_path)
        with pytest.raises(NotFoundError, match="test-zzz"):
            import_from_jsonl(store, jsonl_path, config)
        assert store.count_issues() == 0

    def test_strict_missing_parent(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path, _make_issue("test-epc.1"))
        with pytest.raises(NotFoundError, match="test-epc"):
            import_from_jsonl(store, jsonl_path, config)

    def test_existing_target_is_not_orphan(self, store: SQLiteStorage, jsonl_path, config):
        store.create_issue(_make_issue("test-zzz", "Local"), "alice")
        self._orphan_file(jsonl_path)
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.created == 2

    def test_skip(self, store: SQLiteStorage, jsonl_path, config):
        self._orphan_file(jsonl_path)
        config.orphan_mode = OrphanMode.SKIP
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.created == 1
        assert result.orphans_skipped == 1
        assert store.get_issue("test-bbb") is None

    def test_skip_cascades(self, store: SQLiteStorage, jsonl_path, config):
        _write_jsonl(jsonl_path,
                     _make_issue("test-bbb", dependencies=[_blocks("test-bbb", "test-zzz")]),
                     _make_issue("test-ccc", dependencies=[_blocks("test-ccc", "test-bbb")]))
        config.orphan_mode = OrphanMode.SKIP
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.orphans_skipped == 2
        assert store.count_issues() == 0

    def test_allow(self, store: SQLiteStorage, jsonl_path, config):
        self._orphan_file(jsonl_path)
        config.orphan_mode = OrphanMode.ALLOW
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.created == 2
        assert store.is_blocked("test-bbb")

    def test_resurrect_from_history(self, store: SQLiteStorage, jsonl_path, config, data_dir):
        hist = history_dir(data_dir)
        hist.mkdir()
        _write_jsonl(str(hist / "issues.20260101_000000_000000.jsonl"),
                     _make_issue("test-zzz", "Lost blocker", issue_type=IssueType.BUG))
        self._orphan_file(jsonl_path)
        config.orphan_mode = OrphanMode.RESURRECT

        result = import_from_jsonl(store, jsonl_path, config)

        assert result.resurrected == 1
        assert result.created == 2
        stand_in = store.get_issue("test-zzz")
        assert stand_in.status == Status.TOMBSTONE
        assert stand_in.title == "Lost blocker"
        assert not store.is_blocked("test-bbb")

    def test_resurrect_without_history_skips(self, store: SQLiteStorage, jsonl_path, config):
        self._orphan_file(jsonl_path)
        config.orphan_mode = OrphanMode.RESURRECT
        result = import_from_jsonl(store, jsonl_path, config)
        assert result.resurrected == 0
        assert result.orphans_skipped == 1

    def test_parse(self):
        assert OrphanMode.parse("Resurrect") is OrphanMode.RESURRECT
        with pytest.raises(ValidationError):
            OrphanMode.parse("sometimes")


class TestAutoImport:
    def test_only_when_changed(self, store: SQLiteStorage, data_dir, jsonl_path):
        assert auto_import_if_needed(store, data_dir) is None
        _write_jsonl(jsonl_path, _make_issue("test-aaa"))
        assert auto_import_if_needed(store, data_dir).created == 1
        assert auto_import_if_needed(store, data_dir) is None
        _write_jsonl(jsonl_path, _make_issue("test-aaa"), _make_issue("test-bbb", "Second"))
        assert auto_import_if_needed(store, data_dir).created == 1
        assert [i.id for i in store.list_issues(IssueFilter(), sort_by="id")] == [
            "test-aaa", "test-bbb"]
