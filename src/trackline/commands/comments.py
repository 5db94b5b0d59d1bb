"""tl comments / tl comment add - discussion threads on issues."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.models import Comment
from trackline.utils import format_time_ago


def _echo_comment(c: Comment) -> None:
    first, *rest = c.text.splitlines() or [""]
    click.echo(f"  [{format_time_ago(c.created_at)}] {c.author}: {first}")
    for line in rest:
        click.echo(f"      {line}")


@click.command("comments")
@click.argument("issue_id")
@click.option("--author", default=None, help="Only comments by this author")
@pass_ctx
def comments(ctx: TracklineContext, issue_id: str, author: str | None) -> None:
    """Show the comment thread of an issue, oldest first."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    full_id = ctx.resolve_issue_id(issue_id)
    thread = ctx.store.get_comments(full_id)
    if author is not None:
        thread = [c for c in thread if c.author == author]

    if ctx.json_output:
        ctx.output([c.to_dict() for c in thread])
    elif not thread:
        click.echo(f"No comments on {full_id}")
    else:
        for c in thread:
            _echo_comment(c)


@click.group("comment")
def comment() -> None:
    """Add to an issue's comment thread."""


@comment.command("add")
@click.argument("issue_id")
@click.argument("text", required=False)
@click.option("--file", "-f", "source", type=click.File("r", encoding="utf-8"),
              help="Read the comment text from a file ('-' for stdin)")
@pass_ctx
def comment_add(ctx: TracklineContext, issue_id: str, text: str | None, source) -> None:
    """Append a comment, authored by the current actor."""
    if text is None and source is None:
        raise click.UsageError("give the comment TEXT or --file")
    if text is not None and source is not None:
        raise click.UsageError("TEXT and --file are mutually exclusive")
    body = text if text is not None else source.read().rstrip("\n")

    ctx.ensure_initialized()
    assert ctx.store is not None

    full_id = ctx.resolve_issue_id(issue_id)
    added = ctx.store.add_comment(full_id, ctx.actor, body)
    ctx.auto_flush()

    if ctx.json_output:
        ctx.output(added.to_dict())
    elif not ctx.quiet:
        click.echo(f"Added comment to {full_id}")
