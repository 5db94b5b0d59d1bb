"""Three-way merge of the local store against an external JSONL snapshot.

``base`` is the last state both sides agreed on (``base.jsonl``), ``left``
is the local database and ``right`` is the external file. Changes are
detected by content hash against the base; conflicting edits are resolved
by a ConflictResolution strategy.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from trackline.errors import ValidationError
from trackline.models import Issue
from trackline.sync.importer import normalize_issue
from trackline.sync.jsonl import (
    ensure_no_conflict_markers, read_issues_from_jsonl, serialize_issue,
)
from trackline.sync.path import require_valid_sync_path

if TYPE_CHECKING:
    from trackline.storage.sqlite_store import SQLiteStorage

logger = logging.getLogger(__name__)

BASE_SNAPSHOT_NAME = "base.jsonl"


class ConflictType(str, Enum):
    DELETE_VS_MODIFY = "delete-vs-modify"
    CONVERGENT_CREATION = "convergent-creation"


class ConflictResolution(str, Enum):
    PREFER_LOCAL = "prefer-local"
    PREFER_EXTERNAL = "prefer-external"
    PREFER_NEWER = "prefer-newer"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: str) -> ConflictResolution:
        try:
            return cls(value.strip().lower().replace("_", "-"))
        except ValueError:
            raise ValidationError.single(
                "strategy",
                f"invalid merge strategy {value!r} "
                "(prefer-local, prefer-external, prefer-newer, manual)",
                "config",
            ) from None


class MergeOutcome(str, Enum):
    NO_ACTION = "no-action"
    KEEP = "keep"
    KEEP_WITH_NOTE = "keep-with-note"
    DELETE = "delete"
    CONFLICT = "conflict"


@dataclass
class MergeResult:
    outcome: MergeOutcome
    issue: Issue | None = None
    note: str = ""
    conflict: ConflictType | None = None

    @classmethod
    def keep(cls, issue: Issue, note: str = "") -> MergeResult:
        if note:
            return cls(MergeOutcome.KEEP_WITH_NOTE, issue, note)
        return cls(MergeOutcome.KEEP, issue)


_NO_ACTION = MergeResult(MergeOutcome.NO_ACTION)
_DELETE = MergeResult(MergeOutcome.DELETE)


@dataclass
class MergeContext:
    base: dict[str, Issue] = field(default_factory=dict)
    left: dict[str, Issue] = field(default_factory=dict)
    right: dict[str, Issue] = field(default_factory=dict)

    def all_issue_ids(self) -> list[str]:
        return sorted(set(self.base) | set(self.left) | set(self.right))

    def base_tombstones(self) -> set[str]:
        return {issue_id for issue_id, issue in self.base.items() if issue.is_tombstone()}


@dataclass
class MergeReport:
    kept: list[Issue] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    conflicts: list[tuple[str, ConflictType]] = field(default_factory=list)
    tombstone_protected: list[str] = field(default_factory=list)
    notes: list[tuple[str, str]] = field(default_factory=list)

    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def total_actions(self) -> int:
        return len(self.kept) + len(self.deleted)


def _hash(issue: Issue) -> str:
    return issue.content_hash or issue.compute_content_hash()


def _newer(left: Issue, right: Issue, what: str, suffix: str = "") -> MergeResult:
    if left.updated_at >= right.updated_at:
        return MergeResult.keep(left, f"{what} - kept local (newer){suffix}")
    return MergeResult.keep(right, f"{what} - kept external (newer){suffix}")


def merge_issue(base: Issue | None, left: Issue | None, right: Issue | None,
                strategy: ConflictResolution = ConflictResolution.PREFER_LOCAL) -> MergeResult:
    """Decide the fate of one issue from its base, local and external states."""
    if base is None and left is None and right is None:
        return _NO_ACTION
    if left is None and right is None:
        # Deleted on both sides.
        return _DELETE
    if base is None and right is None:
        return MergeResult.keep(left)
    if base is None and left is None:
        return MergeResult.keep(right)

    if right is None:
        # Deleted externally.
        if left.updated_at <= base.updated_at:
            return _DELETE
        if strategy is ConflictResolution.PREFER_EXTERNAL:
            return _DELETE
        if strategy is ConflictResolution.MANUAL:
            return MergeResult(MergeOutcome.CONFLICT, conflict=ConflictType.DELETE_VS_MODIFY)
        return MergeResult.keep(left, "local modified, external deleted - kept local")

    if left is None:
        # Deleted locally.
        if right.updated_at <= base.updated_at:
            return _DELETE
        if strategy is ConflictResolution.PREFER_LOCAL:
            return _DELETE
        if strategy is ConflictResolution.MANUAL:
            return MergeResult(MergeOutcome.CONFLICT, conflict=ConflictType.DELETE_VS_MODIFY)
        return MergeResult.keep(right, "external modified, local deleted - kept external")

    if base is None:
        # Created independently on both sides.
        if _hash(left) == _hash(right):
            return MergeResult.keep(left)
        if strategy is ConflictResolution.PREFER_LOCAL:
            return MergeResult.keep(left, "convergent creation - kept local")
        if strategy is ConflictResolution.PREFER_EXTERNAL:
            return MergeResult.keep(right, "convergent creation - kept external")
        return _newer(left, right, "convergent creation")

    left_changed = _hash(left) != _hash(base)
    right_changed = _hash(right) != _hash(base)
    if not right_changed:
        return MergeResult.keep(left)
    if not left_changed:
        return MergeResult.keep(right)
    if strategy is ConflictResolution.PREFER_LOCAL:
        return MergeResult.keep(left, "both modified - kept local")
    if strategy is ConflictResolution.PREFER_EXTERNAL:
        return MergeResult.keep(right, "both modified - kept external")
    if strategy is ConflictResolution.MANUAL:
        return _newer(left, right, "both modified", ", review recommended")
    return _newer(left, right, "both modified")


def three_way_merge(context: MergeContext,
                    strategy: ConflictResolution = ConflictResolution.PREFER_LOCAL,
                    tombstones: set[str] | None = None) -> MergeReport:
    """Merge every issue in the context.

    IDs in ``tombstones`` are never brought back from the external side
    when the local side no longer has them.
    """
    tombstones = tombstones or set()
    report = MergeReport()
    for issue_id in context.all_issue_ids():
        base = context.base.get(issue_id)
        left = context.left.get(issue_id)
        right = context.right.get(issue_id)

        if issue_id in tombstones and left is None and right is not None:
            report.tombstone_protected.append(issue_id)
            continue

        result = merge_issue(base, left, right, strategy)
        if result.outcome in (MergeOutcome.KEEP, MergeOutcome.KEEP_WITH_NOTE):
            report.kept.append(result.issue)
            if result.note:
                report.notes.append((issue_id, result.note))
        elif result.outcome is MergeOutcome.DELETE:
            report.deleted.append(issue_id)
        elif result.outcome is MergeOutcome.CONFLICT:
            report.conflicts.append((issue_id, result.conflict))

    logger.debug("three-way merge: %d kept, %d deleted, %d conflicts, %d tombstone-protected",
                 len(report.kept), len(report.deleted), len(report.conflicts),
                 len(report.tombstone_protected))
    return report


def save_base_snapshot(issues: dict[str, Issue], data_dir: str | os.PathLike) -> Path:
    """Record the agreed state after a successful merge, sorted by ID."""
    path = Path(data_dir) / BASE_SNAPSHOT_NAME
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8", newline="\n") as f:
        for issue_id in sorted(issues):
            f.write(serialize_issue(issues[issue_id]) + "\n")
    os.replace(tmp, path)
    return path


def load_base_snapshot(data_dir: str | os.PathLike) -> dict[str, Issue]:
    """Read ``base.jsonl``; an absent snapshot is an empty base."""
    path = Path(data_dir) / BASE_SNAPSHOT_NAME
    if not path.is_file():
        return {}
    base: dict[str, Issue] = {}
    for _, issue in read_issues_from_jsonl(path):
        issue.content_hash = issue.compute_content_hash()
        base[issue.id] = issue
    return base


def load_merge_context(store: SQLiteStorage, jsonl_path: str | os.PathLike,
                       data_dir: str | os.PathLike) -> MergeContext:
    """Collect base snapshot, database and JSONL states for a merge."""
    jsonl_path = require_valid_sync_path(jsonl_path, data_dir)
    left = {issue.id: issue for issue in store.iter_issues_for_export()}

    right: dict[str, Issue] = {}
    if os.path.isfile(jsonl_path):
        ensure_no_conflict_markers(jsonl_path)
        for _, issue in read_issues_from_jsonl(jsonl_path):
            normalize_issue(issue)
            right[issue.id] = issue

    context = MergeContext(base=load_base_snapshot(data_dir), left=left, right=right)
    logger.debug("merge context: %d base, %d local, %d external",
                 len(context.base), len(left), len(right))
    return context


def apply_merge(store: SQLiteStorage, context: MergeContext, report: MergeReport,
                actor: str) -> list[str]:
    """Write a conflict-free merge report into the store.

    Kept issues that differ from the local copy are upserted and deleted
    ones become tombstones. Returns the IDs that changed.
    """
    changed: list[str] = []
    with store.transaction():
        for issue_id in report.deleted:
            local = context.left.get(issue_id)
            if local is not None and not local.is_tombstone():
                store.soft_delete(issue_id, actor, "merge deletion")
                changed.append(issue_id)
        for issue in report.kept:
            local = context.left.get(issue.id)
            if local is not None and (issue is local
                                      or serialize_issue(issue) == serialize_issue(local)):
                continue
            store.upsert_issue_for_import(issue, actor, mark_dirty=True)
            changed.append(issue.id)
        store.rebuild_blocked_cache(full=True)
    logger.info("merge applied: %d issue(s) changed", len(changed))
    return sorted(changed)
