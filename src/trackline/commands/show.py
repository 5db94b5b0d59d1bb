"""tl show - display issue details."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.utils import format_priority, format_time_ago, priority_label


def _section(title: str, text: str) -> None:
    click.echo(f"\n  {title}:")
    for line in text.split("\n"):
        click.echo(f"    {line}")


@click.command("show")
@click.argument("issue_id")
@pass_ctx
def show(ctx: TracklineContext, issue_id: str) -> None:
    """Show detailed view of an issue."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    full_id = ctx.resolve_issue_id(issue_id)
    issue = ctx.store.require_issue(full_id)
    ctx.store.load_relations([issue])
    blocked = ctx.store.is_blocked(full_id)

    if ctx.json_output:
        data = issue.to_dict()
        data["blocked"] = blocked
        data["dependents"] = [d.id for d in ctx.store.get_dependents(full_id)]
        ctx.output(data)
        return

    click.echo(f"{'─' * 60}")
    click.echo(f"  {issue.id}")
    click.echo(f"{'─' * 60}")
    click.echo(f"  Title:    {issue.title}")
    click.echo(f"  Status:   {issue.status}{' (blocked)' if blocked else ''}")
    click.echo(f"  Priority: {format_priority(issue.priority)} ({priority_label(issue.priority)})")
    click.echo(f"  Type:     {issue.issue_type}")

    if issue.assignee:
        click.echo(f"  Assignee: {issue.assignee}")
    if issue.external_ref:
        click.echo(f"  External: {issue.external_ref}")

    click.echo(f"  Created:  {format_time_ago(issue.created_at)}")
    if issue.created_by:
        click.echo(f"  By:       {issue.created_by}")
    click.echo(f"  Updated:  {format_time_ago(issue.updated_at)}")

    if issue.closed_at:
        click.echo(f"  Closed:   {format_time_ago(issue.closed_at)}")
    if issue.close_reason:
        click.echo(f"  Reason:   {issue.close_reason}")
    if issue.due_at:
        click.echo(f"  Due:      {issue.due_at.isoformat()}")
    if issue.defer_until:
        click.echo(f"  Deferred: until {issue.defer_until.isoformat()}")
    if issue.labels:
        click.echo(f"  Labels:   {', '.join(issue.labels)}")

    if issue.description:
        _section("Description", issue.description)
    if issue.design:
        _section("Design", issue.design)
    if issue.acceptance_criteria:
        _section("Acceptance Criteria", issue.acceptance_criteria)
    if issue.notes:
        _section("Notes", issue.notes)

    if issue.dependencies:
        click.echo("\n  Depends on:")
        targets = ctx.store.get_issues_by_ids([d.depends_on_id for d in issue.dependencies])
        for dep in issue.dependencies:
            target = targets.get(dep.depends_on_id)
            status = target.status if target else "?"
            title = target.title if target else "(not in this project)"
            click.echo(f"    → {dep.depends_on_id} [{dep.type}] ({status}) {title}")

    dependents = ctx.store.get_dependents(full_id)
    if dependents:
        click.echo("\n  Depended on by:")
        for other in dependents:
            click.echo(f"    ← {other.id} ({other.status}) {other.title}")

    if issue.comments:
        click.echo(f"\n  Comments ({len(issue.comments)}):")
        for c in issue.comments:
            click.echo(f"    [{format_time_ago(c.created_at)}] {c.author}: {c.text}")

    click.echo()
