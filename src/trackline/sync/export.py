"""JSONL export: write the store to ``issues.jsonl``.

The file is written to ``<path>.tmp``, hashed while writing, atomically
renamed over the target and re-counted. Issues are sorted by ID, one compact
JSON object per line. Ephemeral issues and tombstones past the retention
window are left out.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from trackline.errors import IntegrityError, ValidationError
from trackline.models import DepType, Issue, format_timestamp, validate_label
from trackline.sync.history import HistoryConfig, backup_before_export
from trackline.sync.jsonl import count_issues_in_jsonl, get_issue_ids_from_jsonl, serialize_issue
from trackline.sync.path import require_valid_sync_path

if TYPE_CHECKING:
    from trackline.storage.sqlite_store import SQLiteStorage

logger = logging.getLogger(__name__)

DEFAULT_JSONL_NAME = "issues.jsonl"

METADATA_JSONL_CONTENT_HASH = "jsonl_content_hash"
METADATA_LAST_EXPORT_TIME = "last_export_time"


class ExportErrorPolicy(str, Enum):
    STRICT = "strict"
    BEST_EFFORT = "best-effort"
    PARTIAL = "partial"
    REQUIRED_CORE = "required-core"

    @classmethod
    def parse(cls, value: str) -> ExportErrorPolicy:
        aliases = {
            "strict": cls.STRICT,
            "best-effort": cls.BEST_EFFORT, "best_effort": cls.BEST_EFFORT, "best": cls.BEST_EFFORT,
            "partial": cls.PARTIAL,
            "required-core": cls.REQUIRED_CORE, "required_core": cls.REQUIRED_CORE,
            "core": cls.REQUIRED_CORE,
        }
        try:
            return aliases[value.strip().lower()]
        except KeyError:
            raise ValidationError.single(
                "export-error-policy",
                f"invalid error policy {value!r} (strict, best-effort, partial, required-core)",
                "config",
            ) from None


class ExportEntityType(str, Enum):
    ISSUE = "issue"
    DEPENDENCY = "dependency"
    LABEL = "label"
    COMMENT = "comment"


@dataclass
class ExportError:
    entity_type: ExportEntityType
    entity_id: str
    message: str

    def summary(self) -> str:
        return f"{self.entity_type.value} {self.entity_id or '<unknown>'}: {self.message}"


@dataclass
class ExportReport:
    policy_used: ExportErrorPolicy = ExportErrorPolicy.STRICT
    issues_exported: int = 0
    dependencies_exported: int = 0
    labels_exported: int = 0
    comments_exported: int = 0
    errors: list[ExportError] = field(default_factory=list)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def success_rate(self) -> float:
        total = (self.issues_exported + self.dependencies_exported
                 + self.labels_exported + self.comments_exported)
        failed = len(self.errors)
        return 1.0 if total + failed == 0 else total / (total + failed)


@dataclass
class ExportConfig:
    force: bool = False
    is_default_path: bool = True
    error_policy: ExportErrorPolicy = ExportErrorPolicy.STRICT
    # None keeps tombstones forever.
    retention_days: int | None = None
    data_dir: str | None = None
    allow_external_jsonl: bool = False
    history: HistoryConfig = field(default_factory=HistoryConfig)


@dataclass
class ExportResult:
    exported_count: int = 0
    exported_ids: list[str] = field(default_factory=list)
    skipped_tombstone_ids: list[str] = field(default_factory=list)
    content_hash: str = ""
    output_path: str = ""
    issue_hashes: list[tuple[str, str]] = field(default_factory=list)
    # False when nothing was dirty and the existing file was left alone.
    written: bool = False


@dataclass
class AutoFlushResult:
    flushed: bool = False
    exported_count: int = 0
    content_hash: str = ""


class _ExportContext:
    def __init__(self, policy: ExportErrorPolicy):
        self.policy = policy
        self.errors: list[ExportError] = []

    def handle(self, err: ExportError) -> None:
        fatal = self.policy is ExportErrorPolicy.STRICT or (
            self.policy is ExportErrorPolicy.REQUIRED_CORE
            and err.entity_type is ExportEntityType.ISSUE
        )
        if fatal:
            raise IntegrityError(f"export error: {err.summary()}",
                                 err.entity_type.value, err.entity_id)
        logger.warning("export: skipping %s", err.summary())
        self.errors.append(err)


def is_expired_tombstone(issue: Issue, retention_days: int | None, now: datetime) -> bool:
    if not issue.is_tombstone() or not retention_days or retention_days <= 0:
        return False
    deleted = issue.deleted_at or issue.updated_at
    return deleted < now - timedelta(days=retention_days)


def _checked_issue(issue: Issue, ctx: _ExportContext) -> Issue | None:
    """Return the issue with bad labels/deps/comments dropped, or None to skip it."""
    errors = issue.validation_errors()
    if errors:
        ctx.handle(ExportError(ExportEntityType.ISSUE, issue.id,
                               "; ".join(str(e) for e in errors)))
        return None

    labels = []
    for label in issue.labels:
        try:
            validate_label(label)
        except ValidationError as e:
            ctx.handle(ExportError(ExportEntityType.LABEL, f"{issue.id}:{label}", e.message))
            continue
        labels.append(label)

    deps = []
    for dep in issue.dependencies:
        if not dep.depends_on_id or not DepType.is_valid(dep.type):
            ctx.handle(ExportError(ExportEntityType.DEPENDENCY,
                                   f"{issue.id}->{dep.depends_on_id}",
                                   f"invalid dependency type {dep.type!r}"))
            continue
        deps.append(dep)

    comments = []
    for comment in issue.comments:
        comment_errors = comment.validation_errors()
        if comment_errors:
            ctx.handle(ExportError(ExportEntityType.COMMENT, f"{issue.id}#{comment.id}",
                                   "; ".join(str(e) for e in comment_errors)))
            continue
        comments.append(comment)

    issue.labels, issue.dependencies, issue.comments = labels, deps, comments
    return issue


def _check_data_loss(issues: list[Issue], output_path: str) -> None:
    if not os.path.exists(output_path):
        return
    jsonl_ids = get_issue_ids_from_jsonl(output_path)
    if not jsonl_ids:
        return
    if not issues:
        raise IntegrityError(
            f"refusing to export an empty database over {output_path} "
            f"({len(jsonl_ids)} issues); import first or use --force",
            "file", output_path,
        )
    missing = sorted(jsonl_ids - {issue.id for issue in issues})
    if missing:
        preview = ", ".join(missing[:10])
        more = f" and {len(missing) - 10} more" if len(missing) > 10 else ""
        raise IntegrityError(
            f"refusing to export a stale database: {output_path} has "
            f"{len(missing)} issue(s) the database lacks ({preview}{more}); "
            "import first or use --force",
            "file", output_path,
        )


def export_to_jsonl(store: SQLiteStorage, output_path: str | os.PathLike,
                    config: ExportConfig | None = None) -> tuple[ExportResult, ExportReport]:
    """Write every exportable issue to output_path.

    Without ``force`` an existing file is only rewritten when some issue is
    dirty. Under the strict policy any bad entity aborts before the target
    is touched. Lenient policies drop the bad entity and report it.
    """
    config = config or ExportConfig()
    output_path = os.fspath(output_path)
    if config.data_dir is not None:
        require_valid_sync_path(output_path, config.data_dir, config.allow_external_jsonl)

    now = store.now()
    issues = list(store.iter_issues_for_export())

    ctx = _ExportContext(config.error_policy)
    report = ExportReport(policy_used=config.error_policy)
    result = ExportResult(output_path=output_path)

    if not config.force:
        _check_data_loss(issues, output_path)
        if os.path.exists(output_path) and not store.get_dirty_issue_ids():
            logger.info("nothing to export to %s (no dirty issues)", output_path)
            return result, report

    tmp_path = output_path + ".tmp"
    if config.data_dir is not None:
        require_valid_sync_path(tmp_path, config.data_dir, config.allow_external_jsonl)
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)

    hasher = hashlib.sha256()
    try:
        with open(tmp_path, "w", encoding="utf-8", newline="\n") as f:
            for issue in issues:
                if issue.ephemeral or issue.is_wisp():
                    continue
                if is_expired_tombstone(issue, config.retention_days, now):
                    result.skipped_tombstone_ids.append(issue.id)
                    continue
                checked = _checked_issue(issue, ctx)
                if checked is None:
                    continue
                line = serialize_issue(checked) + "\n"
                f.write(line)
                hasher.update(line.encode("utf-8"))

                result.exported_ids.append(issue.id)
                result.issue_hashes.append(
                    (issue.id, issue.content_hash or issue.compute_content_hash()))
                report.issues_exported += 1
                report.dependencies_exported += len(checked.dependencies)
                report.labels_exported += len(checked.labels)
                report.comments_exported += len(checked.comments)
            f.flush()
            os.fsync(f.fileno())
        if config.data_dir is not None and _is_inside(output_path, config.data_dir):
            backup_before_export(config.data_dir, config.history, output_path, now=now)
        os.replace(tmp_path, output_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise

    try:
        os.chmod(output_path, 0o600)
    except OSError as e:
        logger.debug("could not chmod %s: %s", output_path, e)

    result.written = True
    result.exported_count = len(result.exported_ids)
    result.content_hash = hasher.hexdigest()

    actual = count_issues_in_jsonl(output_path)
    if actual != result.exported_count:
        raise IntegrityError(
            f"export verification failed: expected {result.exported_count} issues, "
            f"{output_path} has {actual} lines",
            "file", output_path,
        )

    report.errors = ctx.errors
    logger.info("exported %d issues to %s (%d tombstones expired, %d errors)",
                result.exported_count, output_path, len(result.skipped_tombstone_ids),
                len(report.errors))
    return result, report


def finalize_export(store: SQLiteStorage, result: ExportResult,
                    config: ExportConfig | None = None) -> None:
    """Record a successful export in the ledgers and metadata."""
    if not result.written:
        return
    config = config or ExportConfig()
    with store.transaction():
        if config.is_default_path:
            store.clear_dirty(result.exported_ids + result.skipped_tombstone_ids)
            store.set_metadata(METADATA_JSONL_CONTENT_HASH, result.content_hash)
        store.set_export_hashes(result.issue_hashes)
        store.set_metadata(METADATA_LAST_EXPORT_TIME, format_timestamp(store.now()))


def auto_flush(store: SQLiteStorage, data_dir: str | os.PathLike,
               jsonl_path: str | os.PathLike | None = None,
               config: ExportConfig | None = None) -> AutoFlushResult:
    """Export to the default JSONL path when anything is dirty."""
    dirty = store.get_dirty_issue_ids()
    if not dirty:
        logger.debug("auto-flush: no dirty issues")
        return AutoFlushResult()

    data_dir = os.fspath(data_dir)
    path = os.fspath(jsonl_path) if jsonl_path else os.path.join(data_dir, DEFAULT_JSONL_NAME)
    config = config or ExportConfig()
    config.data_dir = data_dir
    config.is_default_path = True

    result, _report = export_to_jsonl(store, path, config)
    finalize_export(store, result, config)
    logger.info("auto-flush: exported %d issues (%d were dirty)", result.exported_count, len(dirty))
    return AutoFlushResult(flushed=True, exported_count=result.exported_count,
                           content_hash=result.content_hash)


def _is_inside(path: str, data_dir: str) -> bool:
    root = os.path.realpath(data_dir)
    target = os.path.realpath(os.path.abspath(path))
    try:
        return os.path.commonpath([root, target]) == root
    except ValueError:
        return False
