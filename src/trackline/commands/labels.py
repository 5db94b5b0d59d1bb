"""tl label - manage labels."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx


@click.group("label")
def label() -> None:
    """Manage issue labels."""


@label.command("add")
@click.argument("issue_id")
@click.argument("label_name")
@pass_ctx
def label_add(ctx: TracklineContext, issue_id: str, label_name: str) -> None:
    """Add a label to an issue."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    full_id = ctx.resolve_issue_id(issue_id)
    added = ctx.store.add_label(full_id, label_name, ctx.actor)
    ctx.auto_flush()

    if ctx.quiet or ctx.json_output:
        return
    if added:
        click.echo(f"Added label '{label_name}' to {full_id}")
    else:
        click.echo(f"{full_id} already has label '{label_name}'")


@label.command("remove")
@click.argument("issue_id")
@click.argument("label_name")
@pass_ctx
def label_remove(ctx: TracklineContext, issue_id: str, label_name: str) -> None:
    """Remove a label from an issue."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    full_id = ctx.resolve_issue_id(issue_id)
    removed = ctx.store.remove_label(full_id, label_name, ctx.actor)
    ctx.auto_flush()

    if ctx.quiet or ctx.json_output:
        return
    if removed:
        click.echo(f"Removed label '{label_name}' from {full_id}")
    else:
        click.echo(f"{full_id} has no label '{label_name}'")


@label.command("list")
@click.argument("issue_id", required=False)
@pass_ctx
def label_list(ctx: TracklineContext, issue_id: str | None) -> None:
    """List labels for an issue, or all labels with usage counts."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    if issue_id is None:
        counts = ctx.store.list_all_labels()
        if ctx.json_output:
            ctx.output([{"label": name, "count": n} for name, n in counts])
            return
        if not counts:
            click.echo("No labels.")
            return
        for name, n in counts:
            click.echo(f"  {name:<30} {n}")
        return

    full_id = ctx.resolve_issue_id(issue_id)
    labels = ctx.store.get_labels(full_id)

    if ctx.json_output:
        ctx.output(labels)
        return

    if not labels:
        click.echo(f"No labels on {full_id}")
        return

    for lbl in labels:
        click.echo(f"  {lbl}")
