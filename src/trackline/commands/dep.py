"""tl dep - manage dependencies."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.models import Dependency, DepType
from trackline.utils import truncate


@click.group("dep")
def dep() -> None:
    """Manage issue dependencies."""


@dep.command("add")
@click.argument("issue_id")
@click.argument("depends_on_id")
@click.option("--type", "dep_type", default=DepType.BLOCKS,
              help="Dependency type (blocks, parent-child, related, ...)")
@pass_ctx
def dep_add(ctx: TracklineContext, issue_id: str, depends_on_id: str,
            dep_type: str) -> None:
    """Add a dependency: ISSUE_ID depends on DEPENDS_ON_ID.

    DEPENDS_ON_ID may be an issue in this project or an
    ``external:<project>:<capability>`` reference.
    """
    ctx.ensure_initialized()
    assert ctx.store is not None

    full_issue = ctx.resolve_issue_id(issue_id)
    full_depends = ctx.resolve_dependency_target(depends_on_id)

    ctx.store.add_dependency(Dependency(
        issue_id=full_issue,
        depends_on_id=full_depends,
        type=dep_type,
        created_at=ctx.store.now(),
        created_by=ctx.actor,
    ), ctx.actor)
    ctx.auto_flush()

    if ctx.json_output:
        ctx.output({"issue_id": full_issue, "depends_on_id": full_depends, "type": dep_type})
    elif not ctx.quiet:
        click.echo(f"Added dependency: {full_issue} depends on {full_depends} ({dep_type})")


@dep.command("remove")
@click.argument("issue_id")
@click.argument("depends_on_id")
@pass_ctx
def dep_remove(ctx: TracklineContext, issue_id: str, depends_on_id: str) -> None:
    """Remove a dependency."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    full_issue = ctx.resolve_issue_id(issue_id)
    full_depends = ctx.resolve_dependency_target(depends_on_id)

    ctx.store.remove_dependency(full_issue, full_depends, ctx.actor)
    ctx.auto_flush()

    if not ctx.quiet and not ctx.json_output:
        click.echo(f"Removed dependency: {full_issue} → {full_depends}")


@dep.command("list")
@click.argument("issue_id")
@pass_ctx
def dep_list(ctx: TracklineContext, issue_id: str) -> None:
    """List dependencies for an issue."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    full_id = ctx.resolve_issue_id(issue_id)
    deps = ctx.store.get_dependency_records(full_id)
    dependents = ctx.store.get_dependents(full_id)

    if ctx.json_output:
        ctx.output({
            "dependencies": [d.to_dict() for d in deps],
            "dependents": [d.id for d in dependents],
        })
        return

    if deps:
        click.echo(f"Dependencies of {full_id}:")
        targets = ctx.store.get_issues_by_ids([d.depends_on_id for d in deps])
        for d in deps:
            target = targets.get(d.depends_on_id)
            if d.is_external():
                title, status = "(external)", "?"
            else:
                title = target.title if target else "(unknown)"
                status = target.status if target else "?"
            click.echo(f"  → {d.depends_on_id} [{d.type}] ({status}) {truncate(title)}")
    else:
        click.echo(f"No dependencies for {full_id}")

    if dependents:
        click.echo("\nDepended on by:")
        for d in dependents:
            click.echo(f"  ← {d.id} ({d.status}) {truncate(d.title)}")


@dep.command("cycles")
@pass_ctx
def dep_cycles(ctx: TracklineContext) -> None:
    """Report dependency cycles among blocking edges."""
    ctx.ensure_initialized()
    assert ctx.store is not None

    cycles = ctx.store.detect_all_cycles()

    if ctx.json_output:
        ctx.output(cycles)
        return

    if not cycles:
        click.echo("No dependency cycles.")
        return

    for cycle in cycles:
        click.echo("  " + " → ".join(cycle + cycle[:1]))
    if not ctx.quiet:
        click.echo(f"\n{len(cycles)} cycle(s)")
