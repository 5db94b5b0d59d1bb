"""tl close / tl delete - close or tombstone issues."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.models import ReadyFilter, Status


@click.command("close")
@click.argument("issue_ids", nargs=-1, required=True)
@click.option("--reason", "-r", default="", help="Close reason")
@click.option("--suggest-next", is_flag=True, help="Suggest next issue to work on")
@pass_ctx
def close(ctx: TracklineContext, issue_ids: tuple[str, ...], reason: str,
          suggest_next: bool) -> None:
    """Close one or more issues."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    closed_ids = []
    for partial_id in issue_ids:
        full_id = ctx.resolve_issue_id(partial_id)
        issue = ctx.store.require_issue(full_id)
        if Status.is_terminal(issue.status):
            click.echo(f"Already {issue.status}: {full_id}", err=True)
            continue

        ctx.store.close_issue(full_id, reason, ctx.actor)
        closed_ids.append(full_id)

        if not ctx.quiet and not ctx.json_output:
            click.echo(f"Closed {full_id}: {issue.title}")

    ctx.auto_flush()

    if ctx.json_output:
        ctx.output({"closed": closed_ids})

    if suggest_next and closed_ids and not ctx.json_output:
        ready = ctx.store.get_ready_issues(ReadyFilter(limit=3))
        if ready:
            click.echo("\nSuggested next:")
            for r in ready:
                click.echo(f"  {r.id} P{r.priority} {r.title}")


@click.command("delete")
@click.argument("issue_ids", nargs=-1, required=True)
@click.option("--reason", "-r", default="", help="Deletion reason")
@pass_ctx
def delete(ctx: TracklineContext, issue_ids: tuple[str, ...], reason: str) -> None:
    """Delete issues, leaving a tombstone that propagates through sync."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    deleted_ids = []
    for partial_id in issue_ids:
        full_id = ctx.resolve_issue_id(partial_id)
        issue = ctx.store.require_issue(full_id)
        if issue.is_tombstone():
            click.echo(f"Already deleted: {full_id}", err=True)
            continue
        ctx.store.soft_delete(full_id, ctx.actor, reason)
        deleted_ids.append(full_id)
        if not ctx.quiet and not ctx.json_output:
            click.echo(f"Deleted {full_id}: {issue.title}")

    ctx.auto_flush()

    if ctx.json_output:
        ctx.output({"deleted": deleted_ids})
