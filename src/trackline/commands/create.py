"""tl create - create a new issue."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.models import Dependency, DepType, Issue, IssueType, Status, parse_timestamp


@click.command("create")
@click.option("--title", "-t", required=True, help="Issue title")
@click.option("--type", "issue_type", default="task", help="Issue type (bug, feature, task, epic, ...)")
@click.option("--priority", "-p", default=2, type=click.IntRange(0, 4),
              help="Priority (0=critical, 2=medium, 4=backlog)")
@click.option("--description", "-d", default="", help="Issue description")
@click.option("--design", default="", help="Design notes")
@click.option("--acceptance", default="", help="Acceptance criteria")
@click.option("--notes", "-n", default="", help="Additional notes")
@click.option("--assignee", "-a", default="", help="Assignee")
@click.option("--labels", "-l", multiple=True, help="Labels (repeatable)")
@click.option("--parent", default="", help="Parent issue ID (creates a child ID)")
@click.option("--deps", multiple=True, help="Issue IDs that block this one")
@click.option("--external-ref", default=None, help="External reference (e.g. gh-123)")
@click.option("--due", default="", help="Due date (RFC3339)")
@click.option("--defer", "defer_until", default="", help="Defer until date (RFC3339)")
@click.option("--id", "custom_id", default="", help="Custom issue ID")
@click.option("--silent", is_flag=True, help="Only output the issue ID")
@pass_ctx
def create(ctx: TracklineContext, title: str, issue_type: str, priority: int,
           description: str, design: str, acceptance: str, notes: str, assignee: str,
           labels: tuple[str, ...], parent: str, deps: tuple[str, ...],
           external_ref: str | None, due: str, defer_until: str, custom_id: str,
           silent: bool) -> None:
    """Create a new issue."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    now = ctx.store.now()
    issue = Issue(
        id=custom_id,
        title=title,
        description=description,
        design=design,
        acceptance_criteria=acceptance,
        notes=notes,
        status=Status.OPEN,
        priority=priority,
        issue_type=IssueType.normalize(issue_type),
        assignee=assignee,
        created_at=now,
        created_by=ctx.actor,
        updated_at=now,
        external_ref=external_ref or None,
        labels=list(labels),
    )
    if due:
        issue.due_at = parse_timestamp(due)
    if defer_until:
        issue.defer_until = parse_timestamp(defer_until)
    for dep_id in deps:
        issue.dependencies.append(Dependency(
            issue_id="", depends_on_id=ctx.resolve_dependency_target(dep_id), type=DepType.BLOCKS,
            created_at=now, created_by=ctx.actor,
        ))

    if parent:
        created = ctx.store.create_child(ctx.resolve_issue_id(parent), issue, ctx.actor)
    else:
        created = ctx.store.create_issue(issue, ctx.actor)

    ctx.auto_flush()

    if ctx.json_output:
        ctx.output({"id": created.id})
    elif silent:
        click.echo(created.id)
    else:
        click.echo(f"Created {created.issue_type} {created.id}: {created.title}")
