"""tl history - inspect and prune JSONL backups."""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.config import get_jsonl_path
from trackline.errors import NotFoundError
from trackline.sync.history import (
    backup_stem, history_dir, list_backups, prune_backups, restore_backup,
)
from trackline.utils import format_time_ago


@click.group("history")
def history() -> None:
    """Manage timestamped JSONL backups."""


@history.command("list")
@click.option("--stem", default=None, help="Only backups of this file stem")
@pass_ctx
def history_list(ctx: TracklineContext, stem: str | None) -> None:
    """List backups, newest first."""
    ctx.ensure_initialized()
    assert ctx.data_dir is not None

    backups = list_backups(history_dir(ctx.data_dir), stem)

    if ctx.json_output:
        ctx.output([
            {"path": str(b.path), "stem": b.stem, "timestamp": b.timestamp.isoformat(),
             "size": b.size}
            for b in backups
        ])
        return

    if not backups:
        click.echo("No backups.")
        return

    for b in backups:
        click.echo(f"  {b.path.name:<50} {b.size:>8}  ({format_time_ago(b.timestamp)})")
    if not ctx.quiet:
        click.echo(f"\n{len(backups)} backup(s)")


@history.command("prune")
@click.option("--keep", default=None, type=click.IntRange(min=0),
              help="Backups to keep per stem (default: history-max-count)")
@click.option("--older-than", "older_than_days", default=None, type=click.IntRange(min=0),
              help="Also delete backups older than this many days")
@click.option("--stem", default=None, help="Only prune this file stem")
@pass_ctx
def history_prune(ctx: TracklineContext, keep: int | None, older_than_days: int | None,
                  stem: str | None) -> None:
    """Delete old backups."""
    ctx.ensure_initialized()
    assert ctx.data_dir is not None and ctx.config is not None

    if keep is None:
        keep = ctx.config.history_max_count
    removed = prune_backups(history_dir(ctx.data_dir), keep=keep,
                            older_than_days=older_than_days, stem=stem,
                            now=ctx.store.now() if ctx.store else None)

    if ctx.json_output:
        ctx.output({"removed": removed})
    elif not ctx.quiet:
        click.echo(f"Removed {removed} backup(s)")


@history.command("restore")
@click.argument("backup_name")
@pass_ctx
def history_restore(ctx: TracklineContext, backup_name: str) -> None:
    """Restore the JSONL file from a backup."""
    ctx.ensure_initialized()
    assert ctx.data_dir is not None

    target = get_jsonl_path(ctx.data_dir)
    matches = [b for b in list_backups(history_dir(ctx.data_dir), backup_stem(target))
               if b.path.name == backup_name]
    if not matches:
        raise NotFoundError(backup_name, "backup", f"backup not found: {backup_name}")

    restore_backup(matches[0].path, target, ctx.data_dir)

    if not ctx.quiet and not ctx.json_output:
        click.echo(f"Restored {target} from {backup_name}")
        click.echo("Run 'tl sync --import-only' to load it into the database")
