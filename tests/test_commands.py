"""Tests for CLI commands using Click's test runner."""

import json
import os

import pytest
from click.testing import CliRunner

from trackline.cli import cli
from trackline.config import ENV_ACTOR, ENV_DB, ENV_JSON


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path, monkeypatch):
    """A temporary directory with trackline initialized."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv(ENV_ACTOR, "alice")
    monkeypatch.delenv(ENV_DB, raising=False)
    monkeypatch.delenv(ENV_JSON, raising=False)
    result = CliRunner().invoke(cli, ["init", "--prefix", "test"])
    assert result.exit_code == 0, result.output
    return tmp_path


def _create(runner: CliRunner, title: str, *args: str) -> str:
    result = runner.invoke(cli, ["create", "--title", title, "--silent", *args])
    assert result.exit_code == 0, result.output
    return result.output.strip()


def _jsonl_records(project) -> list[dict]:
    path = project / ".trackline" / "issues.jsonl"
    return [json.loads(line) for line in path.read_text().splitlines() if line]


class TestInit:
    def test_init(self, runner: CliRunner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(cli, ["init", "--prefix", "myproj"])
        assert result.exit_code == 0
        assert "Initialized trackline in" in result.output
        assert os.path.exists(".trackline/config.yaml")
        assert os.path.exists(".trackline/metadata.json")
        assert os.path.exists(".trackline/trackline.db")

    def test_already_initialized(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["init"])
        assert result.exit_code == 0
        assert "trackline already initialized at" in result.output

    def test_invalid_prefix(self, runner: CliRunner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(cli, ["init", "--prefix", "bad prefix!"])
        assert result.exit_code == 1
        assert not os.path.exists(".trackline")

    def test_outside_project(self, runner: CliRunner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(cli, ["list"])
        assert result.exit_code == 1
        assert "not in a trackline project" in result.output


class TestCreate:
    def test_create_basic(self, runner: CliRunner, project):
        result = runner.invoke(cli, [
            "create", "--title", "Test Issue", "--type", "bug", "--priority", "1"
        ])
        assert result.exit_code == 0
        assert "Created bug test-" in result.output
        assert ": Test Issue" in result.output

    def test_create_silent(self, runner: CliRunner, project):
        assert _create(runner, "Silent").startswith("test-")

    def test_create_json(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["--json", "create", "--title", "As JSON"])
        assert result.exit_code == 0
        assert json.loads(result.output)["id"].startswith("test-")

    def test_new_alias(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["new", "--title", "Aliased"])
        assert result.exit_code == 0
        assert "Created task" in result.output

    def test_create_writes_jsonl(self, runner: CliRunner, project):
        issue_id = _create(runner, "Exported", "-l", "backend", "-l", "urgent")
        records = _jsonl_records(project)
        assert [r["id"] for r in records] == [issue_id]
        assert records[0]["labels"] == ["backend", "urgent"]
        assert records[0]["created_by"] == "alice"

    def test_create_child(self, runner: CliRunner, project):
        parent = _create(runner, "Epic", "--type", "epic")
        child = _create(runner, "Part one", "--parent", parent)
        assert child == f"{parent}.1"

    def test_create_with_blocker(self, runner: CliRunner, project):
        blocker = _create(runner, "First")
        blocked = _create(runner, "Second", "--deps", blocker)
        result = runner.invoke(cli, ["blocked"])
        assert blocked in result.output
        assert f"<- {blocker}" in result.output
        assert "(open)" in result.output

    def test_invalid_priority(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["create", "--title", "X", "--priority", "7"])
        assert result.exit_code == 2


class TestShowAndList:
    def test_show(self, runner: CliRunner, project):
        issue_id = _create(runner, "Shown", "-d", "Some details")
        result = runner.invoke(cli, ["show", issue_id])
        assert result.exit_code == 0
        assert "Title:    Shown" in result.output
        assert "Some details" in result.output

    def test_show_by_prefix(self, runner: CliRunner, project):
        issue_id = _create(runner, "Prefixed")
        result = runner.invoke(cli, ["show", issue_id[:-1]])
        assert result.exit_code == 0
        assert issue_id in result.output

    def test_show_json(self, runner: CliRunner, project):
        issue_id = _create(runner, "Shown")
        result = runner.invoke(cli, ["--json", "show", issue_id])
        data = json.loads(result.output)
        assert data["id"] == issue_id
        assert data["blocked"] is False

    def test_show_missing(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["show", "test-zzzzzz"])
        assert result.exit_code == 1
        assert "issue not found" in result.output

    def test_list_empty(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["list"])
        assert result.exit_code == 0
        assert "No issues found." in result.output

    def test_list_with_issues(self, runner: CliRunner, project):
        _create(runner, "Issue 1")
        _create(runner, "Issue 2", "--type", "bug")
        result = runner.invoke(cli, ["list"])
        assert result.exit_code == 0
        assert "2 issue(s)" in result.output
        result = runner.invoke(cli, ["list", "--type", "bug"])
        assert "Issue 2" in result.output
        assert "Issue 1" not in result.output

    def test_list_hides_closed(self, runner: CliRunner, project):
        issue_id = _create(runner, "Done soon")
        runner.invoke(cli, ["close", issue_id])
        assert "No issues found." in runner.invoke(cli, ["list"]).output
        assert "1 issue(s)" in runner.invoke(cli, ["list", "--all"]).output


class TestUpdate:
    def test_update_title(self, runner: CliRunner, project):
        issue_id = _create(runner, "Old")
        result = runner.invoke(cli, ["update", issue_id, "--title", "New"])
        assert result.exit_code == 0
        assert f"Updated {issue_id}" in result.output
        assert _jsonl_records(project)[0]["title"] == "New"

    def test_claim(self, runner: CliRunner, project):
        issue_id = _create(runner, "Mine")
        runner.invoke(cli, ["update", issue_id, "--claim"])
        record = _jsonl_records(project)[0]
        assert record["assignee"] == "alice"
        assert record["status"] == "in_progress"

    def test_update_labels_only(self, runner: CliRunner, project):
        issue_id = _create(runner, "Tagged")
        result = runner.invoke(cli, ["update", issue_id, "--add-label", "ops"])
        assert result.exit_code == 0
        assert _jsonl_records(project)[0]["labels"] == ["ops"]

    def test_no_updates(self, runner: CliRunner, project):
        issue_id = _create(runner, "Untouched")
        result = runner.invoke(cli, ["update", issue_id])
        assert result.exit_code == 1
        assert "No updates specified." in result.output

    def test_invalid_value(self, runner: CliRunner, project):
        issue_id = _create(runner, "Valid")
        result = runner.invoke(cli, ["update", issue_id, "--title", ""])
        assert result.exit_code == 1
        assert result.output.startswith("Error:")


class TestCloseAndDelete:
    def test_close(self, runner: CliRunner, project):
        issue_id = _create(runner, "To close")
        result = runner.invoke(cli, ["close", issue_id, "--reason", "done"])
        assert result.exit_code == 0
        assert f"Closed {issue_id}: To close" in result.output
        record = _jsonl_records(project)[0]
        assert record["status"] == "closed"
        assert record["close_reason"] == "done"

    def test_close_twice(self, runner: CliRunner, project):
        issue_id = _create(runner, "Once")
        runner.invoke(cli, ["close", issue_id])
        result = runner.invoke(cli, ["close", issue_id])
        assert result.exit_code == 0
        assert f"Already closed: {issue_id}" in result.output

    def test_close_json(self, runner: CliRunner, project):
        first = _create(runner, "A")
        second = _create(runner, "B")
        result = runner.invoke(cli, ["--json", "close", first, second])
        assert json.loads(result.output) == {"closed": [first, second]}

    def test_delete(self, runner: CliRunner, project):
        issue_id = _create(runner, "Doomed")
        result = runner.invoke(cli, ["delete", issue_id, "--reason", "dup"])
        assert result.exit_code == 0
        assert f"Deleted {issue_id}: Doomed" in result.output
        record = _jsonl_records(project)[0]
        assert record["status"] == "tombstone"
        assert record["delete_reason"] == "dup"
        assert "No issues found." in runner.invoke(cli, ["list"]).output


class TestReadyAndDeps:
    def test_ready_and_blocked(self, runner: CliRunner, project):
        first = _create(runner, "Foundation")
        second = _create(runner, "Building")
        result = runner.invoke(cli, ["dep", "add", second, first])
        assert result.exit_code == 0
        assert f"Added dependency: {second} depends on {first} (blocks)" in result.output

        result = runner.invoke(cli, ["ready"])
        assert first in result.output
        assert second not in result.output
        assert "1 ready issue(s)" in result.output

        runner.invoke(cli, ["close", first])
        result = runner.invoke(cli, ["ready"])
        assert second in result.output
        assert "No blocked issues." in runner.invoke(cli, ["blocked"]).output

    def test_blocked_explains_parent_propagation(self, runner: CliRunner, project):
        blocker = _create(runner, "Schema")
        epic = _create(runner, "Epic", "--type", "epic", "--deps", blocker)
        child = _create(runner, "Part one", "--parent", epic)

        result = runner.invoke(cli, ["--json", "blocked"])
        assert result.exit_code == 0, result.output
        rows = {row["id"]: row for row in json.loads(result.output)}
        assert rows[epic]["blockers"] == [
            {"id": blocker, "kind": "blocks", "status": "open", "title": "Schema"}]
        assert rows[child]["blocked_by"] == [epic]
        assert rows[child]["blockers"][0]["kind"] == "parent"

        output = runner.invoke(cli, ["blocked"]).output
        assert f"<- {epic}" in output
        assert "(parent is blocked)" in output

    def test_blocked_by_external_capability(self, runner: CliRunner, project):
        local = _create(runner, "Local")
        _create(runner, "Blocked", "--deps", local)
        waiting = _create(runner, "Waiting")
        ref = "external:billing:invoices"
        assert runner.invoke(cli, ["dep", "add", waiting, ref]).exit_code == 0

        result = runner.invoke(cli, ["blocked", "--external"])
        assert result.exit_code == 0, result.output
        assert f"<- {ref}  (external capability not provided)" in result.output
        assert "1 blocked issue(s)" in result.output

    def test_ready_empty(self, runner: CliRunner, project):
        assert "No ready issues." in runner.invoke(cli, ["ready"]).output

    def test_dep_remove(self, runner: CliRunner, project):
        first = _create(runner, "A")
        second = _create(runner, "B")
        runner.invoke(cli, ["dep", "add", second, first])
        result = runner.invoke(cli, ["dep", "remove", second, first])
        assert result.exit_code == 0
        assert f"Removed dependency: {second} → {first}" in result.output
        assert "No dependencies for" in runner.invoke(cli, ["dep", "list", second]).output

    def test_dep_list(self, runner: CliRunner, project):
        first = _create(runner, "Target")
        second = _create(runner, "Source")
        runner.invoke(cli, ["dep", "add", second, first])
        result = runner.invoke(cli, ["dep", "list", second])
        assert f"→ {first} [blocks] (open) Target" in result.output

    def test_self_dependency(self, runner: CliRunner, project):
        issue_id = _create(runner, "Loop")
        result = runner.invoke(cli, ["dep", "add", issue_id, issue_id])
        assert result.exit_code == 1
        assert result.output.startswith("Error:")

    def test_cycle_rejected(self, runner: CliRunner, project):
        first = _create(runner, "A")
        second = _create(runner, "B")
        runner.invoke(cli, ["dep", "add", second, first])
        result = runner.invoke(cli, ["dep", "add", first, second])
        assert result.exit_code == 1
        assert "No dependency cycles." in runner.invoke(cli, ["dep", "cycles"]).output


class TestLabelsAndComments:
    def test_labels(self, runner: CliRunner, project):
        issue_id = _create(runner, "Labelled")
        assert "No labels." in runner.invoke(cli, ["label", "list"]).output
        result = runner.invoke(cli, ["label", "add", issue_id, "urgent"])
        assert f"Added label 'urgent' to {issue_id}" in result.output
        result = runner.invoke(cli, ["label", "add", issue_id, "urgent"])
        assert f"{issue_id} already has label 'urgent'" in result.output
        assert "urgent" in runner.invoke(cli, ["label", "list", issue_id]).output
        result = runner.invoke(cli, ["label", "remove", issue_id, "urgent"])
        assert f"Removed label 'urgent' from {issue_id}" in result.output

    def test_invalid_label(self, runner: CliRunner, project):
        issue_id = _create(runner, "Labelled")
        result = runner.invoke(cli, ["label", "add", issue_id, "has space"])
        assert result.exit_code == 1

    def test_comments(self, runner: CliRunner, project):
        issue_id = _create(runner, "Discussed")
        assert f"No comments on {issue_id}" in runner.invoke(cli, ["comments", issue_id]).output
        result = runner.invoke(cli, ["comment", "add", issue_id, "looks good"])
        assert f"Added comment to {issue_id}" in result.output
        result = runner.invoke(cli, ["comments", issue_id])
        assert "alice: looks good" in result.output
        assert _jsonl_records(project)[0]["comments"][0]["text"] == "looks good"

    def test_comment_from_stdin(self, runner: CliRunner, project):
        issue_id = _create(runner, "Long thread")
        result = runner.invoke(cli, ["comment", "add", issue_id, "--file", "-"],
                               input="first line\nsecond line\n")
        assert result.exit_code == 0, result.output
        result = runner.invoke(cli, ["comments", issue_id])
        assert "alice: first line" in result.output
        assert "      second line" in result.output

    def test_comment_needs_text(self, runner: CliRunner, project):
        issue_id = _create(runner, "Silent")
        assert runner.invoke(cli, ["comment", "add", issue_id]).exit_code == 2

    def test_comments_by_author(self, runner: CliRunner, project):
        issue_id = _create(runner, "Discussed")
        runner.invoke(cli, ["comment", "add", issue_id, "from alice"])
        runner.invoke(cli, ["--actor", "bob", "comment", "add", issue_id, "from bob"])
        result = runner.invoke(cli, ["--json", "comments", issue_id, "--author", "bob"])
        assert [c["text"] for c in json.loads(result.output)] == ["from bob"]


class TestSync:
    def test_sync(self, runner: CliRunner, project):
        _create(runner, "One")
        _create(runner, "Two")
        result = runner.invoke(cli, ["sync"])
        assert result.exit_code == 0, result.output
        assert "Imported: 0 new, 0 updated, 2 unchanged, 0 skipped" in result.output
        assert "Nothing to export (no dirty issues)" in result.output

    def test_clean_sync_keeps_hand_edit(self, runner: CliRunner, project):
        _create(runner, "One")
        path = project / ".trackline" / "issues.jsonl"
        path.write_text(path.read_text() + "\n")
        result = runner.invoke(cli, ["sync", "--flush-only"])
        assert result.exit_code == 0, result.output
        assert path.read_text().endswith("\n\n")

        result = runner.invoke(cli, ["sync", "--flush-only", "--force"])
        assert result.exit_code == 0, result.output
        assert "Exported 1 issues to" in result.output
        assert not path.read_text().endswith("\n\n")

    def test_exclusive_flags(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["sync", "--flush-only", "--import-only"])
        assert result.exit_code == 2

    def test_check(self, runner: CliRunner, project):
        _create(runner, "One")
        result = runner.invoke(cli, ["sync", "--check"])
        assert result.exit_code == 0, result.output
        assert "stale_database_safety" in result.output
        assert "jsonl_parseable" in result.output

    def test_hand_edit_is_imported(self, runner: CliRunner, project):
        issue_id = _create(runner, "Before")
        path = project / ".trackline" / "issues.jsonl"
        record = _jsonl_records(project)[0]
        record["title"] = "After"
        record["updated_at"] = "2099-01-01T00:00:00.000000Z"
        path.write_text(json.dumps(record) + "\n")

        result = runner.invoke(cli, ["show", issue_id])
        assert result.exit_code == 0, result.output
        assert "Title:    After" in result.output

    def test_conflict_markers_block_commands(self, runner: CliRunner, project):
        _create(runner, "One")
        path = project / ".trackline" / "issues.jsonl"
        path.write_text("<<<<<<< HEAD\n" + path.read_text() + "=======\n>>>>>>> main\n")
        result = runner.invoke(cli, ["list"])
        assert result.exit_code == 1
        assert "conflict markers" in result.output

    def test_malformed_record_is_reported(self, runner: CliRunner, project):
        _create(runner, "One")
        path = project / ".trackline" / "issues.jsonl"
        path.write_text(path.read_text() + '{"id":"test-zzz","title":123}\n')
        result = runner.invoke(cli, ["list"])
        assert result.exit_code == 1
        assert "Error: malformed issue record at line 2" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_flush_to_external_output(self, runner: CliRunner, project):
        _create(runner, "One")
        out = project / "shared" / "issues.jsonl"
        out.parent.mkdir()
        result = runner.invoke(cli, ["sync", "--flush-only", "--output", str(out)])
        assert result.exit_code == 0, result.output
        assert len(out.read_text().splitlines()) == 1


class TestSyncMerge:
    def _jsonl(self, project):
        return project / ".trackline" / "issues.jsonl"

    def test_first_merge_records_base(self, runner: CliRunner, project):
        _create(runner, "One")
        _create(runner, "Two")
        result = runner.invoke(cli, ["sync", "--merge"])
        assert result.exit_code == 0, result.output
        assert "Merged: 2 kept, 0 deleted, 0 changed in the database" in result.output
        base = project / ".trackline" / "base.jsonl"
        assert len(base.read_text().splitlines()) == 2

    def test_external_edit_is_merged(self, runner: CliRunner, project):
        issue_id = _create(runner, "One")
        assert runner.invoke(cli, ["sync", "--merge"]).exit_code == 0
        record = _jsonl_records(project)[0]
        record["title"] = "One (edited)"
        record["updated_at"] = "2099-01-01T00:00:00.000000Z"
        self._jsonl(project).write_text(json.dumps(record) + "\n")

        result = runner.invoke(cli, ["sync", "--merge"])
        assert result.exit_code == 0, result.output
        assert "1 changed in the database" in result.output
        assert "Title:    One (edited)" in runner.invoke(cli, ["show", issue_id]).output

    def test_external_delete_tombstones(self, runner: CliRunner, project):
        keep = _create(runner, "Keep")
        gone = _create(runner, "Gone")
        assert runner.invoke(cli, ["sync", "--merge"]).exit_code == 0
        kept = [r for r in _jsonl_records(project) if r["id"] == keep]
        self._jsonl(project).write_text(json.dumps(kept[0]) + "\n")

        result = runner.invoke(cli, ["--json", "sync", "--merge"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["deleted"] == [gone]
        statuses = {r["id"]: r["status"] for r in _jsonl_records(project)}
        assert statuses == {keep: "open", gone: "tombstone"}

    def test_manual_strategy_reports_conflict(self, runner: CliRunner, project):
        issue_id = _create(runner, "One")
        assert runner.invoke(cli, ["sync", "--merge"]).exit_code == 0
        assert runner.invoke(cli, ["update", issue_id, "--title", "Local edit"]).exit_code == 0
        self._jsonl(project).write_text("")

        result = runner.invoke(cli, ["sync", "--merge", "--strategy", "manual"])
        assert result.exit_code == 1
        assert f"merge conflicts: {issue_id} (delete-vs-modify)" in result.output
        assert "Title:    Local edit" in runner.invoke(cli, ["show", issue_id]).output

    def test_merge_rejects_flush_only(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["sync", "--merge", "--flush-only"])
        assert result.exit_code == 2


class TestHistory:
    def test_list_and_prune(self, runner: CliRunner, project):
        assert "No backups." in runner.invoke(cli, ["history", "list"]).output
        _create(runner, "One")
        _create(runner, "Two")
        result = runner.invoke(cli, ["history", "list"])
        assert "1 backup(s)" in result.output
        result = runner.invoke(cli, ["history", "prune", "--keep", "0"])
        assert "Removed 1 backup(s)" in result.output

    def test_restore(self, runner: CliRunner, project):
        _create(runner, "One")
        _create(runner, "Two")
        result = runner.invoke(cli, ["--json", "history", "list"])
        name = os.path.basename(json.loads(result.output)[0]["path"])
        result = runner.invoke(cli, ["history", "restore", name])
        assert result.exit_code == 0, result.output
        assert len(_jsonl_records(project)) == 1

    def test_restore_missing(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["history", "restore", "issues.nope.jsonl"])
        assert result.exit_code == 1
        assert "Error: backup not found: issues.nope.jsonl" in result.output


class TestConfig:
    def test_set_and_get(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["config", "set", "orphan-mode", "skip"])
        assert result.exit_code == 0
        assert "Set orphan-mode = skip" in result.output
        assert runner.invoke(cli, ["config", "get", "orphan-mode"]).output.strip() == "skip"

    def test_invalid_value(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["config", "set", "orphan-mode", "sometimes"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_custom_key(self, runner: CliRunner, project):
        runner.invoke(cli, ["config", "set", "team.name", "core"])
        assert runner.invoke(cli, ["config", "get", "team.name"]).output.strip() == "core"

    def test_missing_key(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["config", "get", "team.name"])
        assert result.exit_code == 1
        assert "Config key not found" in result.output

    def test_list(self, runner: CliRunner, project):
        result = runner.invoke(cli, ["config", "list"])
        assert "issue-prefix = test" in result.output
        assert "issue_prefix = test" in result.output
