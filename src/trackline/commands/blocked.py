"""tl blocked - list blocked issues with the reason each blocker applies."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.models import EXTERNAL_PREFIX, DepType, Issue
from trackline.storage.sqlite_store import SQLiteStorage
from trackline.utils import format_priority, truncate

# Why a blocker holds an issue up.
BLOCKS = "blocks"
PARENT = "parent"
EXTERNAL = "external"
MISSING = "missing"


def describe_blockers(store: SQLiteStorage, issue: Issue,
                      blocker_ids: list[str]) -> list[dict]:
    """One entry per blocker: its ID, kind, and status/title when it is local."""
    parents = {dep.depends_on_id for dep in store.get_dependency_records(issue.id)
               if dep.type == DepType.PARENT_CHILD}
    local = store.get_issues_by_ids(
        [b for b in blocker_ids if not b.startswith(EXTERNAL_PREFIX)])

    entries = []
    for blocker_id in blocker_ids:
        entry: dict = {"id": blocker_id}
        if blocker_id.startswith(EXTERNAL_PREFIX):
            entry["kind"] = EXTERNAL
        elif blocker_id not in local:
            entry["kind"] = MISSING
        else:
            entry["kind"] = PARENT if blocker_id in parents else BLOCKS
            entry["status"] = local[blocker_id].status
            entry["title"] = local[blocker_id].title
        entries.append(entry)
    return entries


def _blocker_line(entry: dict) -> str:
    kind = entry["kind"]
    if kind == EXTERNAL:
        return f"    <- {entry['id']}  (external capability not provided)"
    if kind == MISSING:
        return f"    <- {entry['id']}  (not in this database)"
    note = "parent is blocked" if kind == PARENT else entry["status"]
    return f"    <- {entry['id']:<20} {truncate(entry['title'], 40)}  ({note})"


@click.command("blocked")
@click.option("--external", "external_only", is_flag=True,
              help="Only issues waiting on another project")
@pass_ctx
def blocked(ctx: TracklineContext, external_only: bool) -> None:
    """Show blocked issues and what each one is waiting on."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    rows = []
    for issue, blocker_ids in ctx.store.get_blocked_issues():
        entries = describe_blockers(ctx.store, issue, blocker_ids)
        if external_only and not any(e["kind"] == EXTERNAL for e in entries):
            continue
        rows.append((issue, entries))

    if ctx.json_output:
        ctx.output([
            {**issue.to_dict(), "blocked_by": [e["id"] for e in entries], "blockers": entries}
            for issue, entries in rows
        ])
        return

    if not rows:
        click.echo("No blocked issues.")
        return

    for issue, entries in rows:
        click.echo(f"  {issue.id:<20} {format_priority(issue.priority)} "
                   f"{truncate(issue.title, 45)}")
        for entry in entries:
            click.echo(_blocker_line(entry))

    if not ctx.quiet:
        click.echo(f"\n{len(rows)} blocked issue(s)")
