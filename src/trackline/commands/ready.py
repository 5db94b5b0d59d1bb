"""tl ready - show issues ready to work on."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.models import IssueType, ReadyFilter, SortPolicy
from trackline.utils import format_issue_row


@click.command("ready")
@click.option("--type", "issue_types", multiple=True, help="Filter by type")
@click.option("--priority", "-p", "priorities", type=click.IntRange(0, 4), multiple=True,
              help="Filter by priority")
@click.option("--assignee", "-a", default=None, help="Filter by assignee")
@click.option("--unassigned", is_flag=True, help="Only unassigned issues")
@click.option("--label", "-l", multiple=True, help="Filter by label (AND)")
@click.option("--label-any", multiple=True, help="Filter by label (OR)")
@click.option("--include-deferred", is_flag=True, help="Include issues deferred to the future")
@click.option("--sort", "sort_policy", default=SortPolicy.HYBRID.value,
              type=click.Choice([p.value for p in SortPolicy]), help="Sort policy")
@click.option("--limit", default=0, type=int, help="Max issues")
@click.option("--long", "-L", "long_format", is_flag=True, help="Long format")
@pass_ctx
def ready(ctx: TracklineContext, issue_types: tuple[str, ...], priorities: tuple[int, ...],
          assignee: str | None, unassigned: bool, label: tuple[str, ...],
          label_any: tuple[str, ...], include_deferred: bool, sort_policy: str,
          limit: int, long_format: bool) -> None:
    """Show issues that are ready to work on (open, unblocked)."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    work_filter = ReadyFilter(
        issue_types=[IssueType.normalize(t) for t in issue_types],
        priorities=list(priorities),
        assignee=assignee,
        unassigned=unassigned,
        labels=list(label),
        labels_any=list(label_any),
        include_deferred=include_deferred,
        limit=limit,
    )
    issues = ctx.store.get_ready_issues(work_filter, SortPolicy(sort_policy))

    if ctx.json_output:
        ctx.output([i.to_dict() for i in issues])
        return

    if not issues:
        click.echo("No ready issues.")
        return

    for issue in issues:
        click.echo(format_issue_row(issue, long_format=long_format))

    if not ctx.quiet:
        click.echo(f"\n{len(issues)} ready issue(s)")
