"""tl list - list issues."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.models import IssueFilter, IssueType, ReadyFilter, Status
from trackline.utils import format_issue_row


@click.command("list")
@click.option("--status", "-s", "statuses", multiple=True, help="Filter by status (repeatable)")
@click.option("--priority", "-p", "priorities", type=click.IntRange(0, 4), multiple=True,
              help="Filter by priority (repeatable)")
@click.option("--assignee", "-a", default=None, help="Filter by assignee")
@click.option("--unassigned", is_flag=True, help="Only issues without an assignee")
@click.option("--type", "issue_types", multiple=True, help="Filter by issue type (repeatable)")
@click.option("--label", "-l", multiple=True, help="Filter by label (AND)")
@click.option("--label-any", multiple=True, help="Filter by label (OR)")
@click.option("--parent", default=None, help="Only children of this issue")
@click.option("--text", default="", help="Substring match on id, title, description, notes")
@click.option("--limit", default=0, type=int, help="Max issues to show")
@click.option("--all", "show_all", is_flag=True, help="Include closed issues")
@click.option("--include-deleted", is_flag=True, help="Include tombstones")
@click.option("--sort", "sort_by", default="created",
              type=click.Choice(["created", "updated", "priority", "status", "title", "id", "type"]),
              help="Sort field")
@click.option("--reverse", "-r", is_flag=True, help="Reverse sort order")
@click.option("--long", "-L", "long_format", is_flag=True, help="Long format with extra fields")
@click.option("--ready", is_flag=True, help="Only show ready (unblocked) issues")
@pass_ctx
def list_cmd(ctx: TracklineContext, statuses: tuple[str, ...], priorities: tuple[int, ...],
             assignee: str | None, unassigned: bool, issue_types: tuple[str, ...],
             label: tuple[str, ...], label_any: tuple[str, ...], parent: str | None,
             text: str, limit: int, show_all: bool, include_deleted: bool, sort_by: str,
             reverse: bool, long_format: bool, ready: bool) -> None:
    """List issues with filters."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    types = [IssueType.normalize(t) for t in issue_types]
    if ready:
        issues = ctx.store.get_ready_issues(ReadyFilter(
            issue_types=types,
            priorities=list(priorities),
            assignee=assignee,
            unassigned=unassigned,
            labels=list(label),
            labels_any=list(label_any),
            limit=limit,
        ))
    else:
        f = IssueFilter(
            statuses=list(statuses),
            issue_types=types,
            priorities=list(priorities),
            assignee=assignee,
            unassigned=unassigned,
            labels=list(label),
            labels_any=list(label_any),
            text=text,
            include_tombstones=include_deleted or Status.TOMBSTONE in statuses,
            parent_id=ctx.resolve_issue_id(parent) if parent else None,
            limit=limit,
        )
        if not statuses and not show_all:
            f.statuses = [*Status.UNRESOLVED, Status.PINNED]
        issues = ctx.store.list_issues(f, sort_by=sort_by, reverse=reverse)

    if ctx.json_output:
        ctx.output([i.to_dict() for i in issues])
        return

    if not issues:
        click.echo("No issues found.")
        return

    for issue in issues:
        click.echo(format_issue_row(issue, long_format=long_format))

    if not ctx.quiet:
        click.echo(f"\n{len(issues)} issue(s)")
