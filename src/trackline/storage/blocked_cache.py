"""Materialized blocked-issue cache and ready-work queries.

The cache maps each blocked issue to the IDs blocking it. It is derived from
the issues and dependencies tables alone and can be dropped and recomputed
at any time.

Blocking is seeded by ``blocks``, ``conditional-blocks`` and ``waits-for``
edges whose target is unresolved (or missing locally), then pushed down
``parent-child`` edges from parent to child with a worklist, so diamonds and
cycles terminate and every issue gets exactly one cache row.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

from trackline.models import (
    EXTERNAL_PREFIX, DepType, Issue, ReadyFilter, SortPolicy, Status, format_timestamp,
    parse_external_ref,
)

if TYPE_CHECKING:
    from trackline.storage.sqlite_store import SQLiteStorage

logger = logging.getLogger(__name__)

STALE_KEY = "blocked_cache_stale"

_ORDER_BY = {
    SortPolicy.PRIORITY: "i.priority ASC, i.created_at ASC, i.id ASC",
    SortPolicy.OLDEST: "i.created_at ASC, i.id ASC",
    # P0/P1 first, then the rest, each band oldest first.
    SortPolicy.HYBRID: ("CASE WHEN i.priority <= 1 THEN 0 ELSE 1 END ASC, "
                        "i.created_at ASC, i.id ASC"),
}


def compute_blocked(statuses: dict[str, str],
                    edges: list[tuple[str, str, str]]) -> dict[str, set[str]]:
    """Compute issue_id -> blocker IDs from issue statuses and dependency edges.

    ``edges`` are (issue_id, depends_on_id, type). External targets are
    ignored here. Issues that are themselves closed or tombstoned are never
    reported, but propagation still passes through them.
    """
    blocked: dict[str, set[str]] = {}
    children: dict[str, list[str]] = {}

    for issue_id, target, dep_type in edges:
        if dep_type == DepType.PARENT_CHILD:
            children.setdefault(target, []).append(issue_id)
            continue
        if not DepType.seeds_blocking(dep_type) or target.startswith(EXTERNAL_PREFIX):
            continue
        status = statuses.get(target)
        if status is None or status in Status.UNRESOLVED:
            blocked.setdefault(issue_id, set()).add(target)

    queue = sorted(blocked)
    visited = set(queue)
    while queue:
        parent = queue.pop(0)
        for child in children.get(parent, ()):
            blocked.setdefault(child, set()).add(parent)
            if child not in visited:
                visited.add(child)
                queue.append(child)

    return {
        issue_id: blockers for issue_id, blockers in blocked.items()
        if issue_id in statuses and not Status.is_terminal(statuses[issue_id])
    }


def descendants(roots: set[str], edges: list[tuple[str, str, str]]) -> set[str]:
    """All parent-child descendants of ``roots`` (roots included)."""
    children: dict[str, list[str]] = {}
    for issue_id, target, dep_type in edges:
        if dep_type == DepType.PARENT_CHILD:
            children.setdefault(target, []).append(issue_id)
    seen = set(roots)
    queue = sorted(roots)
    while queue:
        node = queue.pop(0)
        for child in children.get(node, ()):
            if child not in seen:
                seen.add(child)
                queue.append(child)
    return seen


def resolve_project_db(path: str) -> Path:
    """Map an external-projects entry (directory or database file) to a database path."""
    p = Path(path).expanduser()
    if p.suffix == ".db":
        return p
    if (p / ".trackline").is_dir():
        return p / ".trackline" / "trackline.db"
    return p / "trackline.db"


def satisfied_capabilities(db_path: Path, capabilities: set[str]) -> set[str]:
    """Capabilities provided by a closed issue labelled ``provides:<cap>`` in db_path.

    The database is opened read-only and outside the caller's transaction.
    An unreadable database provides nothing.
    """
    if not capabilities:
        return set()
    if not db_path.exists():
        logger.warning("external project database not found: %s", db_path)
        return set()
    labels = sorted(f"provides:{cap}" for cap in capabilities)
    found: set[str] = set()
    try:
        conn = sqlite3.connect(f"{db_path.resolve().as_uri()}?mode=ro", uri=True)
    except sqlite3.Error as e:
        logger.warning("cannot open external project database %s: %s", db_path, e)
        return set()
    try:
        for start in range(0, len(labels), 900):
            chunk = labels[start:start + 900]
            rows = conn.execute(
                "SELECT DISTINCT l.label FROM issues i JOIN labels l ON l.issue_id = i.id "
                "WHERE i.status IN ('closed', 'tombstone') "
                f"AND l.label IN ({', '.join('?' * len(chunk))})",
                chunk,
            ).fetchall()
            found.update(row[0][len("provides:"):] for row in rows)
    except sqlite3.Error as e:
        logger.warning("cannot query external project database %s: %s", db_path, e)
        return set()
    finally:
        conn.close()
    return found


class BlockedCache:
    """Dependency graph cache bound to one SQLiteStorage."""

    def __init__(self, store: SQLiteStorage):
        self._store = store

    def _statuses(self) -> dict[str, str]:
        rows = self._store._query_all("SELECT id, status FROM issues")
        return {row["id"]: row["status"] for row in rows}

    def _blocking_edges(self) -> list[tuple[str, str, str]]:
        rows = self._store._query_all(
            "SELECT issue_id, depends_on_id, type FROM dependencies "
            "WHERE type IN ('blocks', 'parent-child', 'conditional-blocks', 'waits-for') "
            "ORDER BY issue_id, depends_on_id"
        )
        return [(row["issue_id"], row["depends_on_id"], row["type"]) for row in rows]

    # --- Rebuild ---

    def rebuild_in_transaction(self) -> int:
        """Recompute the whole cache. Must run inside the store's transaction."""
        blocked = compute_blocked(self._statuses(), self._blocking_edges())
        ts = format_timestamp(self._store.now())
        self._store._execute("DELETE FROM blocked_issues_cache")
        for issue_id in sorted(blocked):
            self._store._execute(
                "INSERT INTO blocked_issues_cache (issue_id, blocked_by, blocked_at) VALUES (?, ?, ?)",
                (issue_id, json.dumps(sorted(blocked[issue_id])), ts),
            )
        self._store._execute(
            "INSERT INTO metadata (key, value) VALUES (?, '0') "
            "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
            (STALE_KEY,),
        )
        logger.debug("blocked cache rebuilt: %d blocked issues", len(blocked))
        return len(blocked)

    def is_stale(self) -> bool:
        return self._store.get_metadata(STALE_KEY) == "1"

    def rebuild(self, full: bool = True) -> int:
        """Recompute the cache. With full=False only a stale cache is recomputed."""
        if not full and not self.is_stale():
            return self._store._query_one("SELECT COUNT(*) FROM blocked_issues_cache")[0]
        with self._store.transaction():
            return self.rebuild_in_transaction()

    # --- External dependencies ---

    def unsatisfied_external(self) -> dict[str, list[str]]:
        """Issue -> unsatisfied external refs, including parent-child descendants."""
        rows = self._store._query_all(
            "SELECT issue_id, depends_on_id, type FROM dependencies "
            "WHERE depends_on_id LIKE 'external:%' ORDER BY issue_id, depends_on_id"
        )
        wanted: dict[str, set[str]] = {}
        refs: list[tuple[str, str]] = []
        for row in rows:
            if not DepType.seeds_blocking(row["type"]):
                continue
            parsed = parse_external_ref(row["depends_on_id"])
            if parsed is None:
                continue
            wanted.setdefault(parsed[0], set()).add(parsed[1])
            refs.append((row["issue_id"], row["depends_on_id"]))
        if not refs:
            return {}

        satisfied: set[tuple[str, str]] = set()
        for project, caps in wanted.items():
            path = self._store.external_projects.get(project)
            if path is None:
                logger.debug("external project %r is not configured", project)
                continue
            for cap in satisfied_capabilities(resolve_project_db(path), caps):
                satisfied.add((project, cap))

        direct: dict[str, list[str]] = {}
        for issue_id, ref in refs:
            if parse_external_ref(ref) not in satisfied:
                direct.setdefault(issue_id, []).append(ref)
        if not direct:
            return {}

        edges = self._blocking_edges()
        result: dict[str, list[str]] = {k: sorted(v) for k, v in direct.items()}
        # Descendants inherit the root's unsatisfied refs.
        for root in sorted(direct):
            for node in descendants({root}, edges):
                if node != root:
                    merged = set(result.get(node, [])) | {root}
                    result[node] = sorted(merged)
        return result

    # --- Queries ---

    def is_blocked(self, issue_id: str) -> bool:
        self.rebuild(full=False)
        row = self._store._query_one(
            "SELECT 1 FROM blocked_issues_cache WHERE issue_id = ?", (issue_id,))
        if row is not None:
            return True
        return issue_id in self.unsatisfied_external()

    def get_blocked_issues(self) -> list[tuple[Issue, list[str]]]:
        self.rebuild(full=False)
        rows = self._store._query_all(
            "SELECT i.*, b.blocked_by AS blocker_ids FROM issues i "
            "JOIN blocked_issues_cache b ON b.issue_id = i.id"
        )
        blockers: dict[str, list[str]] = {}
        issues: dict[str, Issue] = {}
        for row in rows:
            issues[row["id"]] = self._store._row_to_issue(row)
            blockers[row["id"]] = list(json.loads(row["blocker_ids"] or "[]"))

        external = self.unsatisfied_external()
        missing = [i for i in external if i not in issues]
        for issue in self._store.get_issues_by_ids(missing).values():
            if not Status.is_terminal(issue.status):
                issues[issue.id] = issue
        for issue_id, refs in external.items():
            if issue_id in issues:
                blockers[issue_id] = sorted(set(blockers.get(issue_id, [])) | set(refs))

        ordered = sorted(issues.values(), key=lambda i: (i.priority, i.created_at, i.id))
        return [(issue, blockers[issue.id]) for issue in ordered]

    def get_ready_issues(self, filter: ReadyFilter | None = None,
                         sort: SortPolicy = SortPolicy.HYBRID) -> list[Issue]:
        """Open, unblocked issues that are not deferred, pinned, ephemeral or templates."""
        self.rebuild(full=False)
        f = filter or ReadyFilter()
        sql = """
            SELECT i.* FROM issues i
            WHERE i.status = 'open'
              AND i.pinned = 0
              AND i.ephemeral = 0
              AND i.is_template = 0
              AND instr(i.id, '-wisp-') = 0
              AND NOT EXISTS (SELECT 1 FROM blocked_issues_cache b WHERE b.issue_id = i.id)
        """
        params: list = []

        if not f.include_deferred:
            sql += " AND (i.defer_until IS NULL OR i.defer_until <= ?)"
            params.append(format_timestamp(self._store.now()))
        if f.issue_types:
            sql += f" AND i.issue_type IN ({', '.join('?' * len(f.issue_types))})"
            params.extend(f.issue_types)
        if f.priorities:
            sql += f" AND i.priority IN ({', '.join('?' * len(f.priorities))})"
            params.extend(f.priorities)
        if f.assignee is not None:
            sql += " AND i.assignee = ?"
            params.append(f.assignee)
        if f.unassigned:
            sql += " AND (i.assignee IS NULL OR i.assignee = '')"
        for label in f.labels:
            sql += " AND EXISTS (SELECT 1 FROM labels l WHERE l.issue_id = i.id AND l.label = ?)"
            params.append(label)
        if f.labels_any:
            sql += (" AND EXISTS (SELECT 1 FROM labels l WHERE l.issue_id = i.id "
                    f"AND l.label IN ({', '.join('?' * len(f.labels_any))}))")
            params.extend(f.labels_any)

        sql += f" ORDER BY {_ORDER_BY[SortPolicy(sort)]}"
        rows = self._store._query_all(sql, params)
        issues = [self._store._row_to_issue(row) for row in rows]

        external = self.unsatisfied_external()
        if external:
            issues = [issue for issue in issues if issue.id not in external]
        if f.limit > 0:
            issues = issues[:f.limit]
        return issues
