"""JSONL import: merge ``issues.jsonl`` back into the store.

The whole file is checked before anything is written: conflict markers,
JSON syntax, field validation, prefixes, duplicate external refs and
orphans. Only then are collisions with local issues resolved and the
result applied in a single transaction, so a failed import leaves the
database exactly as it was.

Collision keys are tried in order: ID, content hash, external ref. When a
local issue matches under a different ID, the incoming ID wins and the
local ID is remapped everywhere it is referenced.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from trackline.errors import (
    ConflictError, FieldError, NotFoundError, TracklineError, ValidationError,
)
from trackline.id_gen import has_prefix, parse_id
from trackline.models import Issue, Status, format_timestamp, validate_label
from trackline.sync.export import DEFAULT_JSONL_NAME, METADATA_JSONL_CONTENT_HASH
from trackline.sync.history import history_dir, list_backups
from trackline.sync.jsonl import (
    compute_jsonl_hash, ensure_no_conflict_markers, iter_jsonl_records, read_issues_from_jsonl,
)
from trackline.sync.path import require_valid_sync_path

if TYPE_CHECKING:
    from trackline.storage.sqlite_store import SQLiteStorage

logger = logging.getLogger(__name__)

METADATA_LAST_IMPORT_TIME = "last_import_time"


class OrphanMode(str, Enum):
    STRICT = "strict"
    RESURRECT = "resurrect"
    SKIP = "skip"
    ALLOW = "allow"

    @classmethod
    def parse(cls, value: str) -> OrphanMode:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError.single(
                "orphan-mode",
                f"invalid orphan mode {value!r} (strict, resurrect, skip, allow)",
                "config",
            ) from None


class CollisionKind(str, Enum):
    ID = "id"
    CONTENT_HASH = "content-hash"
    EXTERNAL_REF = "external-ref"


class ImportAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    SKIP = "skip"


@dataclass
class ImportConfig:
    skip_prefix_validation: bool = False
    rename_on_import: bool = False
    clear_duplicate_external_refs: bool = False
    orphan_mode: OrphanMode = OrphanMode.STRICT
    force_upsert: bool = False
    data_dir: str | None = None
    allow_external_jsonl: bool = False
    # None keeps incoming tombstones forever.
    retention_days: int | None = None
    actor: str = "import"


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    tombstone_skipped: int = 0
    orphans_skipped: int = 0
    resurrected: int = 0
    renamed: dict[str, str] = field(default_factory=dict)
    remapped: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return (self.created + self.updated + self.unchanged + self.skipped
                + self.tombstone_skipped + self.orphans_skipped)


@dataclass
class Collision:
    kind: CollisionKind
    existing: Issue


@dataclass
class _Plan:
    issue: Issue
    action: ImportAction
    collision: Collision | None = None


# --- Normalisation and validation ---

def normalize_issue(issue: Issue) -> None:
    """Repair derivable fields on an incoming record."""
    if issue.is_wisp():
        issue.ephemeral = True
    if Status.is_terminal(issue.status):
        if issue.closed_at is None:
            issue.closed_at = issue.updated_at
    else:
        issue.closed_at = None
    if issue.status == Status.TOMBSTONE:
        if issue.deleted_at is None:
            issue.deleted_at = issue.updated_at
    else:
        issue.deleted_at = None
    for dep in issue.dependencies:
        dep.issue_id = issue.id
    for comment in issue.comments:
        comment.issue_id = issue.id
    issue.content_hash = issue.compute_content_hash()


def _validate_incoming(issue: Issue, line_num: int) -> None:
    errors = issue.validation_errors()
    for label in issue.labels:
        try:
            validate_label(label)
        except ValidationError as e:
            errors.extend(e.field_errors)
    for comment in issue.comments:
        errors.extend(FieldError(f"comments.{e.field}", e.message)
                      for e in comment.validation_errors())
    if errors:
        logger.debug("line %d: %s failed validation", line_num, issue.id)
        raise ValidationError(
            [FieldError(e.field, f"{e.message} (line {line_num})") for e in errors],
            "issue", issue.id,
        )


def _dedupe_ids(records: list[tuple[int, Issue]]) -> list[tuple[int, Issue]]:
    """Keep the last record for each ID."""
    by_id: dict[str, tuple[int, Issue]] = {}
    for line_num, issue in records:
        if issue.id in by_id:
            logger.warning("duplicate record for %s at line %d replaces line %d",
                           issue.id, line_num, by_id[issue.id][0])
        by_id[issue.id] = (line_num, issue)
    return sorted(by_id.values(), key=lambda r: r[0])


def _rewrite_references(issues: list[Issue], mapping: dict[str, str]) -> None:
    if not mapping:
        return
    for issue in issues:
        for dep in issue.dependencies:
            dep.issue_id = issue.id
            dep.depends_on_id = mapping.get(dep.depends_on_id, dep.depends_on_id)


def _apply_prefix_policy(store: SQLiteStorage, issues: list[Issue], config: ImportConfig,
                         result: ImportResult) -> None:
    prefix = store.get_config("issue_prefix")
    if not prefix or config.skip_prefix_validation:
        return
    mismatched = [issue for issue in issues if not has_prefix(issue.id, prefix)]
    if not mismatched:
        return
    if not config.rename_on_import:
        preview = ", ".join(issue.id for issue in mismatched[:5])
        raise ValidationError.single(
            "id",
            f"{len(mismatched)} issue(s) do not use prefix '{prefix}-' ({preview}); "
            "use rename-on-import or skip prefix validation",
            "issue", mismatched[0].id,
        )

    taken = {issue.id for issue in issues}

    def exists(candidate: str) -> bool:
        return candidate in taken or store.id_exists(candidate)

    generator = store.id_generator()
    mapping: dict[str, str] = {}
    for issue in mismatched:
        new_id = generator.generate(
            issue.title, issue.description, issue.created_by, issue.created_at,
            existing_count=store.count_issues() + len(taken), exists=exists,
        )
        taken.add(new_id)
        mapping[issue.id] = new_id
        if not issue.external_ref:
            issue.external_ref = issue.id
        logger.debug("renaming %s -> %s on import", issue.id, new_id)
        issue.id = new_id
        for comment in issue.comments:
            comment.issue_id = new_id
        issue.content_hash = issue.compute_content_hash()
    _rewrite_references(issues, mapping)
    result.renamed.update(mapping)


def _check_duplicate_external_refs(issues: list[Issue], config: ImportConfig) -> None:
    holders: dict[str, str] = {}
    for issue in sorted(issues, key=lambda i: i.id):
        ref = issue.external_ref
        if not ref:
            continue
        if ref not in holders:
            holders[ref] = issue.id
            continue
        if config.clear_duplicate_external_refs:
            logger.warning("clearing duplicate external_ref %s on %s (kept on %s)",
                           ref, issue.id, holders[ref])
            issue.external_ref = None
            issue.content_hash = issue.compute_content_hash()
            continue
        raise ConflictError(
            f"external_ref {ref!r} is used by both {holders[ref]} and {issue.id}",
            kind="external-ref", entity_id=issue.id,
        )


def _is_expired_tombstone(issue: Issue, retention_days: int | None, now: datetime) -> bool:
    if not issue.is_tombstone() or not retention_days or retention_days <= 0:
        return False
    return (issue.deleted_at or issue.updated_at) < now - timedelta(days=retention_days)


# --- Orphans ---

def _missing_references(issue: Issue, known: set[str], store: SQLiteStorage) -> list[str]:
    missing = []
    parsed = parse_id(issue.id)
    parent = parsed.parent_id if parsed else None
    targets = [dep.depends_on_id for dep in issue.dependencies if not dep.is_external()]
    if parent:
        targets.append(parent)
    for target in dict.fromkeys(targets):
        if target not in known and not store.id_exists(target):
            missing.append(target)
    return missing


def _find_in_history(data_dir: str | None, issue_id: str) -> Issue | None:
    """Most recent record for issue_id in any JSONL backup."""
    if data_dir is None:
        return None
    for backup in list_backups(history_dir(data_dir)):
        try:
            for _, data in iter_jsonl_records(backup.path):
                if data.get("id") == issue_id:
                    return Issue.from_dict(data)
        except (TracklineError, KeyError, TypeError, ValueError) as e:
            logger.warning("cannot read backup %s: %s", backup.path.name, e)
    return None


def _stand_in(source: Issue, now: datetime, actor: str) -> Issue:
    """A tombstone carrying just enough of a lost issue to anchor its orphans."""
    return Issue(
        id=source.id,
        title=source.title or source.id,
        description=source.description,
        status=Status.TOMBSTONE,
        priority=source.priority if isinstance(source.priority, int) else 2,
        issue_type=source.issue_type or "task",
        created_at=min(source.created_at, now),
        updated_at=now,
        closed_at=now,
        deleted_at=now,
        deleted_by=actor,
        delete_reason="resurrected to anchor orphaned issues",
        original_type=source.issue_type,
    )


def _handle_orphans(store: SQLiteStorage, issues: list[Issue], config: ImportConfig,
                    result: ImportResult) -> tuple[list[Issue], list[Issue]]:
    """Return (issues to import, resurrected stand-ins)."""
    if config.orphan_mode is OrphanMode.ALLOW:
        return issues, []

    resurrected: dict[str, Issue] = {}
    kept = list(issues)
    # Dropping an orphan can orphan its own dependents, so repeat to a fixpoint.
    while True:
        known = {issue.id for issue in kept} | set(resurrected)
        orphans: dict[str, list[str]] = {}
        for issue in kept:
            missing = _missing_references(issue, known, store)
            if missing:
                orphans[issue.id] = missing
        if not orphans:
            break

        if config.orphan_mode is OrphanMode.STRICT:
            issue_id = sorted(orphans)[0]
            raise NotFoundError(
                orphans[issue_id][0], "issue",
                f"orphan: {issue_id} references missing issue {orphans[issue_id][0]} "
                f"({len(orphans)} orphaned record(s))",
            )

        progress = False
        if config.orphan_mode is OrphanMode.RESURRECT:
            for target in sorted({t for targets in orphans.values() for t in targets}):
                source = _find_in_history(config.data_dir, target)
                if source is None:
                    logger.warning("cannot resurrect %s: not found in history", target)
                    continue
                resurrected[target] = _stand_in(source, store.now(), config.actor)
                progress = True
            if progress:
                continue

        dropped = set(orphans)
        for issue_id in sorted(dropped):
            logger.debug("skipping orphan %s (missing %s)", issue_id, ", ".join(orphans[issue_id]))
        kept = [issue for issue in kept if issue.id not in dropped]
        result.orphans_skipped += len(dropped)

    result.resurrected = len(resurrected)
    return kept, list(resurrected.values())


# --- Collision detection ---

def detect_collision(store: SQLiteStorage, issue: Issue, incoming_ids: set[str],
                     claimed: set[str]) -> Collision | None:
    """Find the local issue an incoming record represents, if any."""
    existing = store.get_issue(issue.id)
    if existing is not None:
        return Collision(CollisionKind.ID, existing)

    for candidate in store.find_by_content_hash(issue.content_hash):
        if candidate.id in incoming_ids or candidate.id in claimed:
            continue
        return Collision(CollisionKind.CONTENT_HASH, candidate)

    if issue.external_ref:
        candidate = store.find_by_external_ref(issue.external_ref)
        if candidate is not None and candidate.id != issue.id:
            if candidate.id in incoming_ids or candidate.id in claimed:
                raise ConflictError(
                    f"external_ref {issue.external_ref!r} of {issue.id} belongs to "
                    f"{candidate.id}, which is imported separately",
                    kind="ambiguous-collision", entity_id=issue.id,
                )
            return Collision(CollisionKind.EXTERNAL_REF, candidate)
    return None


def determine_action(incoming: Issue, existing: Issue | None, force_upsert: bool) -> ImportAction:
    if existing is None:
        return ImportAction.CREATE
    # A local deletion is final; the file cannot bring the issue back.
    if existing.is_tombstone():
        return ImportAction.SKIP
    if force_upsert or incoming.updated_at > existing.updated_at:
        return ImportAction.UPDATE
    if incoming.content_hash == existing.content_hash:
        return ImportAction.UNCHANGED
    return ImportAction.SKIP


def _plan(store: SQLiteStorage, issues: list[Issue], config: ImportConfig,
          mapping: dict[str, str]) -> list[_Plan]:
    incoming_ids = {issue.id for issue in issues}
    claimed: set[str] = set()
    plans: list[_Plan] = []

    for issue in issues:
        collision = detect_collision(store, issue, incoming_ids, claimed)
        if collision is not None:
            claimed.add(collision.existing.id)
            if collision.kind is not CollisionKind.ID:
                logger.debug("%s matches local %s by %s", issue.id, collision.existing.id,
                             collision.kind.value)
                mapping[collision.existing.id] = issue.id

        # The incoming external_ref may be held by a different local issue.
        if collision is not None and collision.kind is CollisionKind.ID and issue.external_ref:
            holder = store.find_by_external_ref(issue.external_ref)
            if (holder is not None and holder.id != issue.id
                    and holder.id not in incoming_ids and holder.id not in claimed):
                if holder.content_hash == issue.content_hash:
                    logger.debug("merging %s into %s by external_ref", holder.id, issue.id)
                    claimed.add(holder.id)
                    mapping[holder.id] = issue.id
                elif config.clear_duplicate_external_refs:
                    logger.warning("clearing external_ref %s on %s: held by %s",
                                   issue.external_ref, issue.id, holder.id)
                    issue.external_ref = None
                    issue.content_hash = issue.compute_content_hash()
                else:
                    raise ConflictError(
                        f"{issue.id} carries external_ref {issue.external_ref!r}, "
                        f"which local issue {holder.id} already holds with different content",
                        kind="ambiguous-collision", entity_id=issue.id,
                    )

        existing = collision.existing if collision else None
        action = determine_action(issue, existing, config.force_upsert)
        plans.append(_Plan(issue, action, collision))
    return plans


# --- Entry points ---

def import_from_jsonl(store: SQLiteStorage, input_path: str | os.PathLike,
                      config: ImportConfig | None = None) -> ImportResult:
    """Import every record of input_path. All-or-nothing."""
    config = config or ImportConfig()
    input_path = os.fspath(input_path)
    if config.data_dir is not None:
        require_valid_sync_path(input_path, config.data_dir, config.allow_external_jsonl)
    if not os.path.isfile(input_path):
        raise NotFoundError(input_path, "file", f"JSONL file not found: {input_path}")

    ensure_no_conflict_markers(input_path)
    records = _dedupe_ids(read_issues_from_jsonl(input_path))

    for line_num, issue in records:
        normalize_issue(issue)
        _validate_incoming(issue, line_num)

    result = ImportResult()
    issues = [issue for _, issue in records]
    _apply_prefix_policy(store, issues, config, result)
    _check_duplicate_external_refs(issues, config)

    now = store.now()
    expired = [i.id for i in issues if _is_expired_tombstone(i, config.retention_days, now)]
    if expired:
        logger.debug("skipping %d expired tombstone(s)", len(expired))
        result.tombstone_skipped = len(expired)
        expired_ids = set(expired)
        issues = [issue for issue in issues if issue.id not in expired_ids]

    issues, stand_ins = _handle_orphans(store, issues, config, result)

    mapping: dict[str, str] = {}
    plans = _plan(store, issues, config, mapping)
    _rewrite_references(issues, mapping)
    result.remapped = dict(mapping)

    must_export = set(result.renamed.values()) | set(mapping.values())
    applied: list[str] = []
    with store.transaction():
        store.remap_issue_ids(mapping, config.actor)
        for stand_in in stand_ins:
            stand_in.content_hash = stand_in.compute_content_hash()
            store.upsert_issue_for_import(stand_in, config.actor, mark_dirty=True)
        for plan in plans:
            if plan.action is ImportAction.CREATE:
                store.upsert_issue_for_import(plan.issue, config.actor,
                                              mark_dirty=plan.issue.id in must_export)
                result.created += 1
                applied.append(plan.issue.id)
            elif plan.action is ImportAction.UPDATE:
                store.upsert_issue_for_import(plan.issue, config.actor,
                                              mark_dirty=plan.issue.id in must_export)
                result.updated += 1
                applied.append(plan.issue.id)
            elif plan.action is ImportAction.UNCHANGED:
                result.unchanged += 1
            else:
                logger.debug("skipping %s: local copy is newer or deleted", plan.issue.id)
                result.skipped += 1

        store.clear_dirty([i for i in applied + expired if i not in must_export])
        store.rebuild_blocked_cache(full=True)
        store.set_metadata(METADATA_LAST_IMPORT_TIME, format_timestamp(now))
        store.set_metadata(METADATA_JSONL_CONTENT_HASH, compute_jsonl_hash(input_path))

    logger.info(
        "imported %s: %d created, %d updated, %d unchanged, %d skipped, "
        "%d tombstones expired, %d orphans skipped",
        input_path, result.created, result.updated, result.unchanged, result.skipped,
        result.tombstone_skipped, result.orphans_skipped,
    )
    return result


def auto_import_if_needed(store: SQLiteStorage, data_dir: str | os.PathLike,
                          jsonl_path: str | os.PathLike | None = None,
                          config: ImportConfig | None = None) -> ImportResult | None:
    """Import the default JSONL when its content differs from the last sync."""
    data_dir = os.fspath(data_dir)
    path = Path(jsonl_path) if jsonl_path else Path(data_dir) / DEFAULT_JSONL_NAME
    if not path.is_file():
        return None
    if compute_jsonl_hash(path) == store.get_metadata(METADATA_JSONL_CONTENT_HASH):
        logger.debug("auto-import: %s unchanged since last sync", path)
        return None
    config = config or ImportConfig()
    config.data_dir = data_dir
    return import_from_jsonl(store, path, config)
