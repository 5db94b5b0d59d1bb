"""tl update - update an issue."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.models import IssueUpdate, Status


def _clearable(value: str) -> str | None:
    """An empty option value clears the field."""
    return value if value else None


@click.command("update")
@click.argument("issue_id")
@click.option("--status", "-s", default=None, help="New status")
@click.option("--priority", "-p", type=click.IntRange(0, 4), default=None, help="New priority (0-4)")
@click.option("--title", "-t", default=None, help="New title")
@click.option("--type", "issue_type", default=None, help="New issue type")
@click.option("--assignee", "-a", default=None, help="New assignee (empty to clear)")
@click.option("--description", "-d", default=None, help="New description")
@click.option("--design", default=None, help="New design notes")
@click.option("--acceptance", default=None, help="New acceptance criteria")
@click.option("--notes", "-n", default=None, help="New notes")
@click.option("--append-notes", default=None, help="Append to notes")
@click.option("--external-ref", default=None, help="External reference (empty to clear)")
@click.option("--add-label", multiple=True, help="Add label")
@click.option("--remove-label", multiple=True, help="Remove label")
@click.option("--due", default=None, help="Due date (RFC3339, empty to clear)")
@click.option("--defer", "defer_until", default=None, help="Defer until (RFC3339, empty to clear)")
@click.option("--claim", is_flag=True, help="Claim issue (set assignee to actor, status to in_progress)")
@pass_ctx
def update(ctx: TracklineContext, issue_id: str, status: str | None,
           priority: int | None, title: str | None, issue_type: str | None,
           assignee: str | None, description: str | None, design: str | None,
           acceptance: str | None, notes: str | None, append_notes: str | None,
           external_ref: str | None, add_label: tuple[str, ...],
           remove_label: tuple[str, ...], due: str | None, defer_until: str | None,
           claim: bool) -> None:
    """Update an existing issue."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    full_id = ctx.resolve_issue_id(issue_id)
    issue = ctx.store.require_issue(full_id)

    upd = IssueUpdate()
    if claim:
        upd.assignee = ctx.actor
        upd.status = Status.IN_PROGRESS

    if status is not None:
        upd.status = status
    if priority is not None:
        upd.priority = priority
    if title is not None:
        upd.title = title
    if issue_type is not None:
        upd.issue_type = issue_type
    if assignee is not None:
        upd.assignee = _clearable(assignee)
    if description is not None:
        upd.description = description
    if design is not None:
        upd.design = design
    if acceptance is not None:
        upd.acceptance_criteria = acceptance
    if notes is not None:
        upd.notes = notes
    if append_notes is not None:
        base = notes if notes is not None else issue.notes
        upd.notes = f"{base}\n{append_notes}" if base else append_notes
    if external_ref is not None:
        upd.external_ref = _clearable(external_ref)
    if due is not None:
        upd.due_at = _clearable(due)
    if defer_until is not None:
        upd.defer_until = _clearable(defer_until)

    if upd.is_empty() and not add_label and not remove_label:
        click.echo("No updates specified.", err=True)
        raise SystemExit(1)

    if not upd.is_empty():
        ctx.store.update_issue(full_id, upd, ctx.actor)

    for lbl in add_label:
        ctx.store.add_label(full_id, lbl, ctx.actor)
    for lbl in remove_label:
        ctx.store.remove_label(full_id, lbl, ctx.actor)

    ctx.auto_flush()

    if ctx.json_output:
        ctx.output(ctx.store.require_issue(full_id).to_dict())
    elif not ctx.quiet:
        click.echo(f"Updated {full_id}")
