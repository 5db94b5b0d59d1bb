"""SQLite storage implementation for trackline."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from trackline.errors import (
    ConflictError, LockTimeoutError, NotFoundError, StorageError, ValidationError,
)
from trackline.id_gen import (
    IdConfig, IdGenerator, check_hierarchy_depth, generate_child_id,
)
from trackline.models import (
    Comment, Dependency, DepType, Event, EventType, Issue, IssueFilter, IssueUpdate,
    ReadyFilter, SortPolicy, Status, format_timestamp, now_utc, parse_external_ref,
    parse_timestamp, validate_label,
)
from trackline.storage.blocked_cache import BlockedCache
from trackline.storage.interface import Storage
from trackline.storage.schema import apply_schema

logger = logging.getLogger(__name__)

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER on older builds is 999.
CHUNK_SIZE = 900

ISSUE_COLUMNS = (
    "id", "content_hash", "title", "description", "design", "acceptance_criteria",
    "notes", "status", "priority", "issue_type", "assignee", "owner",
    "estimated_minutes", "created_at", "created_by", "updated_at", "closed_at",
    "close_reason", "closed_by_session", "due_at", "defer_until", "external_ref",
    "source_system", "compaction_level", "compacted_at", "compacted_at_commit",
    "original_size", "deleted_at", "deleted_by", "delete_reason", "original_type",
    "sender", "ephemeral", "pinned", "is_template",
)

_TIMESTAMP_FIELDS = {"created_at", "updated_at", "closed_at", "due_at", "defer_until",
                     "compacted_at", "deleted_at"}
_FLAG_FIELDS = {"ephemeral", "pinned", "is_template"}

_BLOCKING_TYPES_SQL = "('blocks', 'parent-child', 'conditional-blocks', 'waits-for')"


def chunked(items: list, size: int = CHUNK_SIZE) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _placeholders(n: int) -> str:
    return ", ".join("?" * n)


@dataclass
class MutationContext:
    """Side effects collected during one logical mutation.

    Flushed inside the same transaction as the row changes, so an issue's
    row, its audit events and its dirty marker always commit together.
    """
    actor: str
    now: datetime
    events: list[tuple] = field(default_factory=list)
    dirty_ids: set[str] = field(default_factory=set)
    invalidate_blocked_cache: bool = False

    def record_event(self, issue_id: str, event_type: str, old_value: str | None = None,
                     new_value: str | None = None, comment: str | None = None) -> None:
        self.events.append((issue_id, event_type, old_value, new_value, comment))

    def mark_dirty(self, issue_id: str) -> None:
        self.dirty_ids.add(issue_id)

    def invalidate_cache(self) -> None:
        self.invalidate_blocked_cache = True


class SQLiteStorage(Storage):
    """SQLite-based storage backend."""

    def __init__(self, db_path: str, lock_timeout_ms: int = 5000,
                 clock: Callable[[], datetime] = now_utc,
                 id_config: IdConfig | None = None,
                 external_projects: dict[str, str] | None = None):
        self._db_path = db_path
        self._lock_timeout_ms = lock_timeout_ms
        self._clock = clock
        self._id_config = id_config
        self._tx_depth = 0
        self.external_projects: dict[str, str] = dict(external_projects or {})
        try:
            # Transactions are managed explicitly with BEGIN IMMEDIATE.
            self._conn = sqlite3.connect(db_path, isolation_level=None,
                                         timeout=lock_timeout_ms / 1000.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute(f"PRAGMA busy_timeout={int(lock_timeout_ms)}")
        except sqlite3.Error as e:
            raise self._wrap_error(e) from e
        self._blocked = BlockedCache(self)
        self._init_schema()

    def _init_schema(self) -> None:
        # executescript commits any open transaction, so DDL runs outside one.
        try:
            needs_rebuild = apply_schema(self._conn)
        except sqlite3.Error as e:
            raise self._wrap_error(e) from e
        if needs_rebuild:
            # Recomputed lazily by the first blocked/ready query.
            self.mark_blocked_cache_stale()

    def path(self) -> str:
        return self._db_path

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> SQLiteStorage:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def now(self) -> datetime:
        return self._clock()

    # --- Error handling ---

    def _wrap_error(self, e: sqlite3.Error) -> StorageError:
        text = str(e).lower()
        if "locked" in text or "busy" in text:
            return LockTimeoutError(self._db_path, self._lock_timeout_ms)
        return StorageError(f"database error: {e}", entity_id=self._db_path)

    def _execute(self, sql: str, params: Any = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise self._wrap_error(e) from e

    def _query_one(self, sql: str, params: Any = ()) -> sqlite3.Row | None:
        return self._execute(sql, params).fetchone()

    def _query_all(self, sql: str, params: Any = ()) -> list[sqlite3.Row]:
        return self._execute(sql, params).fetchall()

    # --- Transactions ---

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block in one transaction. Nested calls join the outer one."""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self._conn
            finally:
                self._tx_depth -= 1
            return

        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise self._wrap_error(e) from e
        self._tx_depth = 1
        try:
            yield self._conn
        except BaseException as e:
            self._tx_depth = 0
            self._rollback()
            if isinstance(e, sqlite3.Error):
                raise self._wrap_error(e) from e
            raise
        self._tx_depth = 0
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback()
            raise self._wrap_error(e) from e

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.Error:
                logger.exception("rollback failed for %s", self._db_path)

    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def run_in_transaction(self, fn: Callable[[Storage], Any]) -> Any:
        with self.transaction():
            return fn(self)

    @contextmanager
    def _mutation(self, actor: str) -> Iterator[MutationContext]:
        with self.transaction():
            ctx = MutationContext(actor=actor, now=self._clock())
            yield ctx
            self._flush_mutation(ctx)

    def _flush_mutation(self, ctx: MutationContext) -> None:
        ts = format_timestamp(ctx.now)
        for issue_id, event_type, old_value, new_value, comment in ctx.events:
            self._execute(
                "INSERT INTO events (issue_id, event_type, actor, old_value, new_value, comment, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (issue_id, event_type, ctx.actor, old_value, new_value, comment, ts),
            )
        for issue_id in sorted(ctx.dirty_ids):
            self._execute(
                "INSERT INTO dirty_issues (issue_id, marked_at) VALUES (?, ?) "
                "ON CONFLICT (issue_id) DO UPDATE SET marked_at = excluded.marked_at",
                (issue_id, ts),
            )
        if ctx.invalidate_blocked_cache:
            self._blocked.rebuild_in_transaction()

    # --- Helpers ---

    def _row_to_issue(self, row: sqlite3.Row) -> Issue:
        """Convert a database row to an Issue object."""
        issue = Issue()
        issue.id = row["id"]
        issue.content_hash = row["content_hash"] or ""
        issue.title = row["title"]
        issue.description = row["description"] or ""
        issue.design = row["design"] or ""
        issue.acceptance_criteria = row["acceptance_criteria"] or ""
        issue.notes = row["notes"] or ""
        issue.status = row["status"] or Status.OPEN
        issue.priority = row["priority"]
        issue.issue_type = row["issue_type"] or "task"
        issue.assignee = row["assignee"] or ""
        issue.owner = row["owner"] or ""
        issue.estimated_minutes = row["estimated_minutes"]
        issue.created_at = parse_timestamp(row["created_at"]) or now_utc()
        issue.created_by = row["created_by"] or ""
        issue.updated_at = parse_timestamp(row["updated_at"]) or issue.created_at
        issue.closed_at = parse_timestamp(row["closed_at"])
        issue.close_reason = row["close_reason"] or ""
        issue.closed_by_session = row["closed_by_session"] or ""
        issue.due_at = parse_timestamp(row["due_at"])
        issue.defer_until = parse_timestamp(row["defer_until"])
        issue.external_ref = row["external_ref"]
        issue.source_system = row["source_system"] or ""
        issue.compaction_level = row["compaction_level"] or 0
        issue.compacted_at = parse_timestamp(row["compacted_at"])
        issue.compacted_at_commit = row["compacted_at_commit"]
        issue.original_size = row["original_size"] or 0
        issue.deleted_at = parse_timestamp(row["deleted_at"])
        issue.deleted_by = row["deleted_by"] or ""
        issue.delete_reason = row["delete_reason"] or ""
        issue.original_type = row["original_type"] or ""
        issue.sender = row["sender"] or ""
        issue.ephemeral = bool(row["ephemeral"])
        issue.pinned = bool(row["pinned"])
        issue.is_template = bool(row["is_template"])
        return issue

    def _issue_params(self, issue: Issue) -> list[Any]:
        params: list[Any] = []
        for col in ISSUE_COLUMNS:
            value = getattr(issue, col)
            if col in _TIMESTAMP_FIELDS:
                value = format_timestamp(value)
            elif col in _FLAG_FIELDS:
                value = int(bool(value))
            elif col == "assignee":
                value = value or None
            params.append(value)
        return params

    def _insert_issue_row(self, issue: Issue) -> None:
        self._execute(
            f"INSERT INTO issues ({', '.join(ISSUE_COLUMNS)}) "
            f"VALUES ({_placeholders(len(ISSUE_COLUMNS))})",
            self._issue_params(issue),
        )

    def _update_issue_row(self, issue: Issue) -> None:
        # Plain UPDATE: INSERT OR REPLACE would delete the row and cascade.
        cols = ISSUE_COLUMNS[1:]
        params = self._issue_params(issue)[1:] + [issue.id]
        self._execute(
            f"UPDATE issues SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?",
            params,
        )

    def _check_external_ref_free(self, external_ref: str | None, issue_id: str) -> None:
        if not external_ref:
            return
        row = self._query_one(
            "SELECT id FROM issues WHERE external_ref = ? AND id != ?", (external_ref, issue_id)
        )
        if row is not None:
            raise ConflictError(
                f"external_ref {external_ref!r} is already used by {row['id']}",
                kind="external-ref", entity_id=issue_id,
            )

    def _validate_new_dependency(self, dep: Dependency) -> None:
        if dep.issue_id == dep.depends_on_id:
            raise ConflictError(f"issue {dep.issue_id} cannot depend on itself",
                                kind="self-dependency", entity_type="dependency",
                                entity_id=dep.issue_id)
        if not DepType.is_valid(dep.type):
            raise ValidationError.single("type", f"invalid dependency type: {dep.type!r}",
                                         "dependency", dep.issue_id)
        if not self.id_exists(dep.issue_id):
            raise NotFoundError(dep.issue_id)
        if dep.is_external():
            if parse_external_ref(dep.depends_on_id) is None:
                raise ValidationError.single(
                    "depends_on_id", "external dependency must look like external:<project>:<capability>",
                    "dependency", dep.depends_on_id,
                )
        elif not self.id_exists(dep.depends_on_id):
            raise NotFoundError(dep.depends_on_id, message=f"dependency target not found: {dep.depends_on_id}")
        row = self._query_one(
            "SELECT type FROM dependencies WHERE issue_id = ? AND depends_on_id = ?",
            (dep.issue_id, dep.depends_on_id),
        )
        if row is not None:
            raise ConflictError(
                f"{dep.issue_id} already depends on {dep.depends_on_id} ({row['type']})",
                kind="duplicate-dependency", entity_type="dependency", entity_id=dep.issue_id,
            )
        if DepType.affects_ready_work(dep.type) and self.would_create_cycle(
                dep.issue_id, dep.depends_on_id):
            raise ConflictError(
                f"adding dependency {dep.issue_id} -> {dep.depends_on_id} would create a cycle",
                kind="cycle", entity_type="dependency", entity_id=dep.issue_id,
            )

    def _insert_dependency(self, dep: Dependency) -> None:
        self._execute(
            "INSERT INTO dependencies (issue_id, depends_on_id, type, created_at, created_by) "
            "VALUES (?, ?, ?, ?, ?)",
            (dep.issue_id, dep.depends_on_id, dep.type,
             format_timestamp(dep.created_at), dep.created_by),
        )

    def _insert_comment(self, comment: Comment) -> int:
        cur = self._execute(
            "INSERT INTO comments (issue_id, author, text, created_at) VALUES (?, ?, ?, ?)",
            (comment.issue_id, comment.author, comment.text,
             format_timestamp(comment.created_at)),
        )
        return cur.lastrowid or 0

    # --- Issue CRUD ---

    def id_generator(self) -> IdGenerator:
        config = replace(self._id_config) if self._id_config else IdConfig()
        prefix = self.get_config("issue_prefix")
        if prefix:
            config.prefix = prefix
        return IdGenerator(config)

    def generate_id(self, issue: Issue) -> str:
        return self.id_generator().generate(
            issue.title, issue.description, issue.created_by, issue.created_at,
            existing_count=self.count_issues(), exists=self.id_exists,
        )

    def create_issue(self, issue: Issue, actor: str) -> Issue:
        with self._mutation(actor) as ctx:
            if not issue.created_by:
                issue.created_by = actor
            if not issue.id:
                issue.id = self.generate_id(issue)
            if issue.external_ref == "":
                issue.external_ref = None
            if issue.status == Status.CLOSED and issue.closed_at is None:
                issue.closed_at = issue.updated_at
            issue.validate()
            for label in issue.labels:
                validate_label(label)
            if self.id_exists(issue.id):
                raise ConflictError(f"issue {issue.id} already exists", kind="exists",
                                    entity_id=issue.id)
            self._check_external_ref_free(issue.external_ref, issue.id)

            issue.content_hash = issue.compute_content_hash()
            self._insert_issue_row(issue)

            for label in sorted(set(issue.labels)):
                self._execute("INSERT INTO labels (issue_id, label) VALUES (?, ?)",
                              (issue.id, label))
            for dep in issue.dependencies:
                dep.issue_id = issue.id
                if not dep.created_by:
                    dep.created_by = actor
                self._validate_new_dependency(dep)
                self._insert_dependency(dep)
            for comment in issue.comments:
                comment.issue_id = issue.id
                errors = comment.validation_errors()
                if errors:
                    raise ValidationError(errors, "comment", issue.id)
                comment.id = self._insert_comment(comment)

            ctx.record_event(issue.id, EventType.CREATED, new_value=issue.title)
            ctx.mark_dirty(issue.id)
            ctx.invalidate_cache()
        logger.debug("created issue %s", issue.id)
        return issue

    def create_child(self, parent_id: str, issue: Issue, actor: str) -> Issue:
        """Create an issue with a hierarchical ``parent.N`` ID and a parent-child edge."""
        with self.transaction():
            parent = self.require_issue(parent_id)
            error = check_hierarchy_depth(parent.id)
            if error:
                raise ValidationError.single("id", error, "issue", parent.id)
            issue.id = generate_child_id(parent.id, self.next_child_number(parent.id))
            issue.dependencies.append(
                Dependency(issue_id=issue.id, depends_on_id=parent.id,
                           type=DepType.PARENT_CHILD, created_at=self._clock(),
                           created_by=actor)
            )
            return self.create_issue(issue, actor)

    def get_issue(self, issue_id: str) -> Issue | None:
        row = self._query_one("SELECT * FROM issues WHERE id = ?", (issue_id,))
        if row is None:
            return None
        issue = self._row_to_issue(row)
        issue.labels = self.get_labels(issue_id)
        issue.dependencies = self.get_dependency_records(issue_id)
        issue.comments = self.get_comments(issue_id)
        return issue

    def require_issue(self, issue_id: str) -> Issue:
        issue = self.get_issue(issue_id)
        if issue is None:
            raise NotFoundError(issue_id)
        return issue

    def id_exists(self, issue_id: str) -> bool:
        return self._query_one("SELECT 1 FROM issues WHERE id = ?", (issue_id,)) is not None

    def update_issue(self, issue_id: str, update: IssueUpdate, actor: str) -> Issue:
        changes = update.changes()
        for name in IssueUpdate.REQUIRED:
            if name in changes and changes[name] is None:
                raise ValidationError.single(name, "is required and cannot be cleared",
                                             "issue", issue_id)

        with self._mutation(actor) as ctx:
            current = self.require_issue(issue_id)
            updated = replace(current, labels=list(current.labels),
                              dependencies=list(current.dependencies),
                              comments=list(current.comments))
            for name, value in changes.items():
                if name in ("due_at", "defer_until"):
                    value = parse_timestamp(value)
                elif name in ("assignee", "owner", "close_reason", "source_system") and value is None:
                    value = ""
                elif name == "external_ref" and value == "":
                    value = None
                elif name in _FLAG_FIELDS:
                    value = bool(value)
                setattr(updated, name, value)

            reopened = (Status.is_terminal(current.status)
                        and not Status.is_terminal(updated.status))
            if updated.status != current.status:
                if updated.status == Status.CLOSED:
                    updated.closed_at = ctx.now
                elif not Status.is_terminal(updated.status):
                    updated.closed_at = None
                    if current.status == Status.CLOSED and "close_reason" not in changes:
                        updated.close_reason = ""
                if updated.status == Status.TOMBSTONE:
                    updated.deleted_at = ctx.now
                    updated.deleted_by = actor
                    updated.original_type = current.issue_type
                elif current.status == Status.TOMBSTONE:
                    updated.deleted_at = None
                    updated.deleted_by = ""
                    updated.delete_reason = ""

            changed = [
                name for name in ISSUE_COLUMNS
                if getattr(updated, name) != getattr(current, name)
            ]
            if not changed:
                return current

            updated.updated_at = max(ctx.now, current.created_at)
            updated.validate()
            if "external_ref" in changed:
                self._check_external_ref_free(updated.external_ref, issue_id)
            updated.content_hash = updated.compute_content_hash()
            self._update_issue_row(updated)

            if updated.status != current.status:
                if updated.status == Status.CLOSED:
                    ctx.record_event(issue_id, EventType.CLOSED, current.status,
                                     updated.status, updated.close_reason or None)
                elif reopened:
                    ctx.record_event(issue_id, EventType.REOPENED, current.status, updated.status)
                else:
                    ctx.record_event(issue_id, EventType.STATUS_CHANGED,
                                     current.status, updated.status)
                ctx.invalidate_cache()
            for name in changes:
                if name == "status" or name not in changed:
                    continue
                ctx.record_event(issue_id, EventType.UPDATED,
                                 _event_value(getattr(current, name)),
                                 _event_value(getattr(updated, name)), comment=name)
            ctx.mark_dirty(issue_id)
        return updated

    def close_issue(self, issue_id: str, reason: str, actor: str) -> Issue:
        return self.update_issue(
            issue_id, IssueUpdate(status=Status.CLOSED, close_reason=reason), actor)

    def reopen_issue(self, issue_id: str, actor: str) -> Issue:
        return self.update_issue(issue_id, IssueUpdate(status=Status.OPEN), actor)

    def soft_delete(self, issue_id: str, actor: str, reason: str = "") -> Issue:
        with self._mutation(actor) as ctx:
            current = self.require_issue(issue_id)
            if current.is_tombstone():
                return current
            tomb = replace(current)
            tomb.status = Status.TOMBSTONE
            tomb.deleted_at = ctx.now
            tomb.deleted_by = actor
            tomb.delete_reason = reason
            tomb.original_type = current.issue_type
            tomb.updated_at = max(ctx.now, current.created_at)
            tomb.content_hash = tomb.compute_content_hash()
            self._update_issue_row(tomb)
            ctx.record_event(issue_id, EventType.DELETED, current.status,
                             Status.TOMBSTONE, reason or None)
            ctx.mark_dirty(issue_id)
            ctx.invalidate_cache()
        return tomb

    def hard_delete(self, issue_id: str, actor: str) -> None:
        with self._mutation(actor) as ctx:
            if not self.id_exists(issue_id):
                raise NotFoundError(issue_id)
            rows = self._query_all(
                "SELECT DISTINCT issue_id FROM dependencies WHERE depends_on_id = ? AND issue_id != ?",
                (issue_id, issue_id),
            )
            self._execute("DELETE FROM dependencies WHERE depends_on_id = ?", (issue_id,))
            self._execute("DELETE FROM issues WHERE id = ?", (issue_id,))
            for row in rows:
                ctx.record_event(row["issue_id"], EventType.DEPENDENCY_REMOVED,
                                 old_value=issue_id, comment="target purged")
                ctx.mark_dirty(row["issue_id"])
            ctx.invalidate_cache()
        logger.debug("hard-deleted issue %s", issue_id)

    def purge_tombstones(self, retention_days: int, actor: str) -> list[str]:
        """Hard-delete tombstones whose deleted_at is older than the retention window."""
        if retention_days <= 0:
            return []
        cutoff = format_timestamp(self._clock() - timedelta(days=retention_days))
        rows = self._query_all(
            "SELECT id FROM issues WHERE status = 'tombstone' AND deleted_at IS NOT NULL "
            "AND deleted_at < ? ORDER BY id",
            (cutoff,),
        )
        purged = [row["id"] for row in rows]
        with self.transaction():
            for issue_id in purged:
                self.hard_delete(issue_id, actor)
        if purged:
            logger.info("purged %d expired tombstones", len(purged))
        return purged

    # --- Query ---

    def _build_filter_sql(self, f: IssueFilter) -> tuple[str, list[Any]]:
        """Build WHERE clause from IssueFilter."""
        clauses = ["1=1"]
        params: list[Any] = []

        if not f.include_tombstones:
            clauses.append("i.status != 'tombstone'")
        if not f.include_templates:
            clauses.append("i.is_template = 0")
        if not f.include_ephemeral:
            clauses.append("i.ephemeral = 0")

        if f.statuses:
            clauses.append(f"i.status IN ({_placeholders(len(f.statuses))})")
            params.extend(f.statuses)
        if f.issue_types:
            clauses.append(f"i.issue_type IN ({_placeholders(len(f.issue_types))})")
            params.extend(f.issue_types)
        if f.priorities:
            clauses.append(f"i.priority IN ({_placeholders(len(f.priorities))})")
            params.extend(f.priorities)

        if f.assignee is not None:
            clauses.append("i.assignee = ?")
            params.append(f.assignee)
        if f.unassigned:
            clauses.append("(i.assignee IS NULL OR i.assignee = '')")

        if f.text:
            clauses.append("(i.title LIKE ? OR i.description LIKE ? OR i.notes LIKE ? OR i.id LIKE ?)")
            pattern = f"%{f.text}%"
            params.extend([pattern] * 4)

        for label in f.labels:
            clauses.append("EXISTS (SELECT 1 FROM labels l WHERE l.issue_id = i.id AND l.label = ?)")
            params.append(label)
        if f.labels_any:
            clauses.append(
                "EXISTS (SELECT 1 FROM labels l WHERE l.issue_id = i.id "
                f"AND l.label IN ({_placeholders(len(f.labels_any))}))"
            )
            params.extend(f.labels_any)

        if f.ids:
            clauses.append(f"i.id IN ({_placeholders(len(f.ids))})")
            params.extend(f.ids)

        if f.parent_id:
            clauses.append(
                "EXISTS (SELECT 1 FROM dependencies d WHERE d.issue_id = i.id "
                "AND d.type = 'parent-child' AND d.depends_on_id = ?)"
            )
            params.append(f.parent_id)

        return " AND ".join(clauses), params

    def list_issues(self, filter: IssueFilter, sort_by: str = "created_at",
                    reverse: bool = False) -> list[Issue]:
        where, params = self._build_filter_sql(filter)

        sort_map = {
            "created": "i.created_at",
            "created_at": "i.created_at",
            "updated": "i.updated_at",
            "updated_at": "i.updated_at",
            "priority": "i.priority",
            "status": "i.status",
            "title": "i.title",
            "id": "i.id",
            "type": "i.issue_type",
        }
        order_col = sort_map.get(sort_by, "i.created_at")
        order_dir = "DESC" if reverse else "ASC"

        sql = f"SELECT * FROM issues i WHERE {where} ORDER BY {order_col} {order_dir}, i.id ASC"
        if filter.limit > 0:
            sql += " LIMIT ?"
            params.append(filter.limit)
        rows = self._query_all(sql, params)
        return [self._row_to_issue(row) for row in rows]

    def count_issues(self, include_tombstones: bool = True) -> int:
        sql = "SELECT COUNT(*) FROM issues"
        if not include_tombstones:
            sql += " WHERE status != 'tombstone'"
        return self._query_one(sql)[0]

    def get_issues_by_ids(self, issue_ids: list[str]) -> dict[str, Issue]:
        result: dict[str, Issue] = {}
        for chunk in chunked(sorted(set(issue_ids))):
            rows = self._query_all(
                f"SELECT * FROM issues WHERE id IN ({_placeholders(len(chunk))})", chunk)
            for row in rows:
                result[row["id"]] = self._row_to_issue(row)
        return result

    def load_relations(self, issues: list[Issue]) -> None:
        """Populate labels, dependencies and comments in batches."""
        by_id = {issue.id: issue for issue in issues}
        for issue in issues:
            issue.labels, issue.dependencies, issue.comments = [], [], []
        for chunk in chunked(list(by_id)):
            marks = _placeholders(len(chunk))
            for row in self._query_all(
                    f"SELECT issue_id, label FROM labels WHERE issue_id IN ({marks}) "
                    "ORDER BY issue_id, label", chunk):
                by_id[row["issue_id"]].labels.append(row["label"])
            for row in self._query_all(
                    f"SELECT * FROM dependencies WHERE issue_id IN ({marks}) "
                    "ORDER BY issue_id, depends_on_id", chunk):
                by_id[row["issue_id"]].dependencies.append(_row_to_dependency(row))
            for row in self._query_all(
                    f"SELECT * FROM comments WHERE issue_id IN ({marks}) "
                    "ORDER BY issue_id, created_at, id", chunk):
                by_id[row["issue_id"]].comments.append(_row_to_comment(row))

    def iter_issues_for_export(self) -> Iterator[Issue]:
        rows = self._query_all("SELECT * FROM issues ORDER BY id")
        issues = [self._row_to_issue(row) for row in rows]
        self.load_relations(issues)
        return iter(issues)

    def find_by_external_ref(self, external_ref: str) -> Issue | None:
        row = self._query_one("SELECT * FROM issues WHERE external_ref = ?", (external_ref,))
        return self._row_to_issue(row) if row else None

    def find_by_content_hash(self, content_hash: str) -> list[Issue]:
        rows = self._query_all(
            "SELECT * FROM issues WHERE content_hash = ? ORDER BY id", (content_hash,))
        return [self._row_to_issue(row) for row in rows]

    # --- Partial ID resolution ---

    def resolve_id(self, partial: str) -> str | None:
        """Resolve an exact ID or a unique ID prefix to a full ID."""
        if self.id_exists(partial):
            return partial
        # substr instead of LIKE: '_' is legal in IDs and a LIKE wildcard.
        rows = self._query_all(
            "SELECT id FROM issues WHERE substr(id, 1, ?) = ? LIMIT 2", (len(partial), partial)
        )
        if len(rows) == 1:
            return rows[0]["id"]
        return None

    # --- Dependencies ---

    def add_dependency(self, dep: Dependency, actor: str) -> None:
        with self._mutation(actor) as ctx:
            if not dep.created_by:
                dep.created_by = actor
            self._validate_new_dependency(dep)
            self._insert_dependency(dep)
            ctx.record_event(dep.issue_id, EventType.DEPENDENCY_ADDED,
                             new_value=dep.depends_on_id, comment=dep.type)
            ctx.mark_dirty(dep.issue_id)
            ctx.invalidate_cache()

    def remove_dependency(self, issue_id: str, depends_on_id: str, actor: str) -> None:
        with self._mutation(actor) as ctx:
            cur = self._execute(
                "DELETE FROM dependencies WHERE issue_id = ? AND depends_on_id = ?",
                (issue_id, depends_on_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(
                    f"{issue_id} -> {depends_on_id}", entity_type="dependency",
                    message=f"no dependency from {issue_id} on {depends_on_id}",
                )
            ctx.record_event(issue_id, EventType.DEPENDENCY_REMOVED, old_value=depends_on_id)
            ctx.mark_dirty(issue_id)
            ctx.invalidate_cache()

    def get_dependencies(self, issue_id: str) -> list[Issue]:
        rows = self._query_all(
            "SELECT i.* FROM issues i JOIN dependencies d ON i.id = d.depends_on_id "
            "WHERE d.issue_id = ? ORDER BY i.id",
            (issue_id,),
        )
        return [self._row_to_issue(row) for row in rows]

    def get_dependents(self, issue_id: str) -> list[Issue]:
        rows = self._query_all(
            "SELECT i.* FROM issues i JOIN dependencies d ON i.id = d.issue_id "
            "WHERE d.depends_on_id = ? ORDER BY i.id",
            (issue_id,),
        )
        return [self._row_to_issue(row) for row in rows]

    def get_dependency_records(self, issue_id: str) -> list[Dependency]:
        rows = self._query_all(
            "SELECT * FROM dependencies WHERE issue_id = ? ORDER BY depends_on_id", (issue_id,)
        )
        return [_row_to_dependency(row) for row in rows]

    def _blocking_edges(self) -> dict[str, list[str]]:
        graph: dict[str, list[str]] = {}
        for row in self._query_all(
                f"SELECT issue_id, depends_on_id FROM dependencies "
                f"WHERE type IN {_BLOCKING_TYPES_SQL} ORDER BY issue_id, depends_on_id"):
            graph.setdefault(row["issue_id"], []).append(row["depends_on_id"])
        return graph

    def would_create_cycle(self, issue_id: str, depends_on_id: str) -> bool:
        """Check if adding issue_id -> depends_on_id would close a blocking loop.

        Breadth-first walk from depends_on_id with a visited set, so existing
        cycles and diamonds terminate.
        """
        if issue_id == depends_on_id:
            return True
        graph = self._blocking_edges()
        visited = {depends_on_id}
        queue = [depends_on_id]
        while queue:
            node = queue.pop(0)
            for nxt in graph.get(node, ()):
                if nxt == issue_id:
                    return True
                if nxt not in visited:
                    visited.add(nxt)
                    queue.append(nxt)
        return False

    def detect_all_cycles(self) -> list[list[str]]:
        """Find cycles among blocking edges. Each cycle is reported once."""
        graph = self._blocking_edges()
        cycles: list[list[str]] = []
        seen: set[tuple[str, ...]] = set()
        done: set[str] = set()

        for start in sorted(graph):
            if start in done:
                continue
            # Iterative DFS keeping the current path on an explicit stack.
            path: list[str] = []
            on_path: dict[str, int] = {}
            stack: list[tuple[str, Iterator[str]]] = []

            def push(node: str) -> None:
                on_path[node] = len(path)
                path.append(node)
                stack.append((node, iter(graph.get(node, ()))))

            push(start)
            while stack:
                node, children = stack[-1]
                nxt = next(children, None)
                if nxt is None:
                    stack.pop()
                    path.pop()
                    del on_path[node]
                    done.add(node)
                    continue
                if nxt in on_path:
                    cycle = path[on_path[nxt]:]
                    pivot = cycle.index(min(cycle))
                    key = tuple(cycle[pivot:] + cycle[:pivot])
                    if key not in seen:
                        seen.add(key)
                        cycles.append(list(key))
                elif nxt not in done:
                    push(nxt)
        return cycles

    # --- Labels ---

    def add_label(self, issue_id: str, label: str, actor: str) -> bool:
        validate_label(label)
        with self._mutation(actor) as ctx:
            if not self.id_exists(issue_id):
                raise NotFoundError(issue_id)
            cur = self._execute(
                "INSERT OR IGNORE INTO labels (issue_id, label) VALUES (?, ?)", (issue_id, label)
            )
            if cur.rowcount == 0:
                return False
            ctx.record_event(issue_id, EventType.LABEL_ADDED, new_value=label)
            ctx.mark_dirty(issue_id)
        return True

    def remove_label(self, issue_id: str, label: str, actor: str) -> bool:
        with self._mutation(actor) as ctx:
            if not self.id_exists(issue_id):
                raise NotFoundError(issue_id)
            cur = self._execute(
                "DELETE FROM labels WHERE issue_id = ? AND label = ?", (issue_id, label)
            )
            if cur.rowcount == 0:
                return False
            ctx.record_event(issue_id, EventType.LABEL_REMOVED, old_value=label)
            ctx.mark_dirty(issue_id)
        return True

    def get_labels(self, issue_id: str) -> list[str]:
        rows = self._query_all(
            "SELECT label FROM labels WHERE issue_id = ? ORDER BY label", (issue_id,)
        )
        return [row["label"] for row in rows]

    def list_all_labels(self) -> list[tuple[str, int]]:
        rows = self._query_all(
            "SELECT l.label, COUNT(*) AS cnt FROM labels l JOIN issues i ON i.id = l.issue_id "
            "WHERE i.status != 'tombstone' GROUP BY l.label ORDER BY l.label"
        )
        return [(row["label"], row["cnt"]) for row in rows]

    # --- Comments ---

    def add_comment(self, issue_id: str, author: str, text: str) -> Comment:
        with self._mutation(author) as ctx:
            if not self.id_exists(issue_id):
                raise NotFoundError(issue_id)
            comment = Comment(issue_id=issue_id, author=author, text=text, created_at=ctx.now)
            errors = comment.validation_errors()
            if errors:
                raise ValidationError(errors, "comment", issue_id)
            comment.id = self._insert_comment(comment)
            ctx.record_event(issue_id, EventType.COMMENTED, new_value=text)
            ctx.mark_dirty(issue_id)
        return comment

    def get_comments(self, issue_id: str) -> list[Comment]:
        rows = self._query_all(
            "SELECT * FROM comments WHERE issue_id = ? ORDER BY created_at ASC, id ASC",
            (issue_id,),
        )
        return [_row_to_comment(row) for row in rows]

    # --- Events ---

    def get_events(self, issue_id: str) -> list[Event]:
        rows = self._query_all(
            "SELECT * FROM events WHERE issue_id = ? ORDER BY created_at ASC, id ASC",
            (issue_id,),
        )
        return [
            Event(
                id=row["id"],
                issue_id=row["issue_id"],
                event_type=row["event_type"],
                actor=row["actor"],
                old_value=row["old_value"],
                new_value=row["new_value"],
                comment=row["comment"],
                created_at=parse_timestamp(row["created_at"]) or now_utc(),
            )
            for row in rows
        ]

    # --- Import support ---

    def upsert_issue_for_import(self, issue: Issue, actor: str, mark_dirty: bool = False) -> bool:
        """Write an imported issue with its labels, dependencies and comments.

        Labels, dependencies and comments are replaced to match the record.
        Returns True when the row was created. The caller rebuilds the
        blocked cache once the whole batch is applied.
        """
        with self._mutation(actor) as ctx:
            issue.content_hash = issue.compute_content_hash()
            existed = self.id_exists(issue.id)
            if existed:
                self._update_issue_row(issue)
            else:
                self._insert_issue_row(issue)

            self._execute("DELETE FROM labels WHERE issue_id = ?", (issue.id,))
            for label in sorted(set(issue.labels)):
                self._execute("INSERT INTO labels (issue_id, label) VALUES (?, ?)",
                              (issue.id, label))

            self._execute("DELETE FROM dependencies WHERE issue_id = ?", (issue.id,))
            seen: set[str] = set()
            for dep in issue.dependencies:
                if dep.depends_on_id in seen or dep.depends_on_id == issue.id:
                    continue
                seen.add(dep.depends_on_id)
                dep.issue_id = issue.id
                self._insert_dependency(dep)

            self._execute("DELETE FROM comments WHERE issue_id = ?", (issue.id,))
            for comment in issue.comments:
                comment.issue_id = issue.id
                comment.id = self._insert_comment(comment)

            ctx.record_event(issue.id, EventType.UPDATED if existed else EventType.CREATED,
                             comment="import")
            if mark_dirty:
                ctx.mark_dirty(issue.id)
        return not existed

    def remap_issue_ids(self, mapping: dict[str, str], actor: str) -> None:
        """Rewrite every reference to each old ID so it points at its new ID.

        Applies one pass over dependencies (both ends), labels, comments,
        events and the ledgers. When both rows exist the old row is removed;
        when only the old row exists it is renamed.
        """
        if not mapping:
            return
        with self._mutation(actor) as ctx:
            # Children are moved before their parent row, so defer FK checks.
            self._execute("PRAGMA defer_foreign_keys = ON")
            for old, new in sorted(mapping.items()):
                if old == new:
                    continue
                old_exists = self.id_exists(old)
                new_exists = self.id_exists(new)
                if old_exists and not new_exists:
                    self._execute("UPDATE issues SET id = ? WHERE id = ?", (new, old))

                for column in ("issue_id", "depends_on_id"):
                    rows = self._query_all(
                        f"SELECT DISTINCT issue_id FROM dependencies WHERE {column} = ?", (old,))
                    for row in rows:
                        ctx.mark_dirty(new if row["issue_id"] == old else row["issue_id"])
                    self._execute(
                        f"UPDATE OR IGNORE dependencies SET {column} = ? WHERE {column} = ?",
                        (new, old))
                    self._execute(f"DELETE FROM dependencies WHERE {column} = ?", (old,))
                self._execute(
                    "DELETE FROM dependencies WHERE issue_id = ? AND depends_on_id = ?", (new, new))

                self._execute("UPDATE OR IGNORE labels SET issue_id = ? WHERE issue_id = ?",
                              (new, old))
                self._execute("DELETE FROM labels WHERE issue_id = ?", (old,))
                self._execute("UPDATE comments SET issue_id = ? WHERE issue_id = ?", (new, old))
                self._execute("UPDATE events SET issue_id = ? WHERE issue_id = ?", (new, old))
                for table in ("dirty_issues", "export_hashes", "blocked_issues_cache"):
                    self._execute(f"DELETE FROM {table} WHERE issue_id = ?", (old,))
                self._execute("DELETE FROM child_counters WHERE parent_id = ?", (old,))

                if old_exists and new_exists:
                    self._execute("DELETE FROM issues WHERE id = ?", (old,))
                if old_exists or new_exists:
                    ctx.record_event(new, EventType.MERGED, old_value=old, new_value=new)
                    ctx.mark_dirty(new)
                logger.debug("remapped %s -> %s", old, new)
            ctx.invalidate_cache()

    # --- Dirty tracking ---

    def get_dirty_issue_ids(self) -> list[str]:
        rows = self._query_all("SELECT issue_id FROM dirty_issues ORDER BY marked_at ASC, issue_id")
        return [row["issue_id"] for row in rows]

    def clear_dirty(self, issue_ids: list[str]) -> None:
        if not issue_ids:
            return
        with self.transaction():
            for chunk in chunked(list(issue_ids)):
                self._execute(
                    f"DELETE FROM dirty_issues WHERE issue_id IN ({_placeholders(len(chunk))})",
                    chunk)

    def clear_all_dirty(self) -> None:
        with self.transaction():
            self._execute("DELETE FROM dirty_issues")

    # --- Export hashes ---

    def get_export_hash(self, issue_id: str) -> str | None:
        row = self._query_one(
            "SELECT content_hash FROM export_hashes WHERE issue_id = ?", (issue_id,))
        return row["content_hash"] if row else None

    def set_export_hashes(self, hashes: list[tuple[str, str]]) -> None:
        if not hashes:
            return
        ts = format_timestamp(self._clock())
        with self.transaction():
            for issue_id, content_hash in hashes:
                self._execute(
                    "INSERT INTO export_hashes (issue_id, content_hash, exported_at) "
                    "VALUES (?, ?, ?) ON CONFLICT (issue_id) DO UPDATE SET "
                    "content_hash = excluded.content_hash, exported_at = excluded.exported_at",
                    (issue_id, content_hash, ts),
                )

    def clear_all_export_hashes(self) -> None:
        with self.transaction():
            self._execute("DELETE FROM export_hashes")

    # --- Config ---

    def get_config(self, key: str) -> str | None:
        row = self._query_one("SELECT value FROM config WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_config(self, key: str, value: str) -> None:
        with self.transaction():
            self._execute(
                "INSERT INTO config (key, value) VALUES (?, ?) "
                "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def list_config(self) -> dict[str, str]:
        rows = self._query_all("SELECT key, value FROM config ORDER BY key")
        return {row["key"]: row["value"] for row in rows}

    # --- Metadata ---

    def get_metadata(self, key: str) -> str | None:
        row = self._query_one("SELECT value FROM metadata WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_metadata(self, key: str, value: str) -> None:
        with self.transaction():
            self._execute(
                "INSERT INTO metadata (key, value) VALUES (?, ?) "
                "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    # --- Child counters ---

    def next_child_number(self, parent_id: str) -> int:
        with self.transaction():
            row = self._query_one(
                "SELECT last_child FROM child_counters WHERE parent_id = ?", (parent_id,))
            if row:
                next_num = row["last_child"] + 1
                self._execute("UPDATE child_counters SET last_child = ? WHERE parent_id = ?",
                              (next_num, parent_id))
            else:
                # Children may already exist from an import.
                existing = self._query_all(
                    "SELECT id FROM issues WHERE substr(id, 1, ?) = ?",
                    (len(parent_id) + 1, f"{parent_id}."),
                )
                taken = [
                    int(r["id"][len(parent_id) + 1:]) for r in existing
                    if r["id"][len(parent_id) + 1:].isdigit()
                ]
                next_num = max(taken, default=0) + 1
                self._execute("INSERT INTO child_counters (parent_id, last_child) VALUES (?, ?)",
                              (parent_id, next_num))
        return next_num

    # --- Blocked cache / ready work ---

    def mark_blocked_cache_stale(self) -> None:
        self.set_metadata("blocked_cache_stale", "1")

    def rebuild_blocked_cache(self, full: bool = True) -> int:
        return self._blocked.rebuild(full=full)

    def is_blocked(self, issue_id: str) -> bool:
        return self._blocked.is_blocked(issue_id)

    def get_blocked_issues(self) -> list[tuple[Issue, list[str]]]:
        return self._blocked.get_blocked_issues()

    def get_ready_issues(self, filter: ReadyFilter | None = None,
                         sort: SortPolicy = SortPolicy.HYBRID) -> list[Issue]:
        return self._blocked.get_ready_issues(filter, sort)


def _event_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return format_timestamp(value)
    return str(value)


def _row_to_dependency(row: sqlite3.Row) -> Dependency:
    return Dependency(
        issue_id=row["issue_id"],
        depends_on_id=row["depends_on_id"],
        type=row["type"],
        created_at=parse_timestamp(row["created_at"]) or now_utc(),
        created_by=row["created_by"] or "",
    )


def _row_to_comment(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        issue_id=row["issue_id"],
        author=row["author"],
        text=row["text"],
        created_at=parse_timestamp(row["created_at"]) or now_utc(),
    )


def open_storage(db_path: str, **kwargs: Any) -> SQLiteStorage:
    """Open or create a SQLite storage at the given path."""
    return SQLiteStorage(db_path, **kwargs)
