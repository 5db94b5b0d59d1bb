"""tl config - manage configuration.

Keys known to config.yaml (``issue-prefix``, ``orphan-mode``, ...) are read
from and written to that file. Any other key lives in the database's config
table.
"""

from __future__ import annotations

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.config import TracklineConfig


@click.group("config")
def config_cmd() -> None:
    """Manage trackline configuration."""


@config_cmd.command("get")
@click.argument("key")
@pass_ctx
def config_get(ctx: TracklineContext, key: str) -> None:
    """Get a config value."""
    ctx.ensure_initialized()
    assert ctx.store is not None and ctx.config is not None

    if TracklineConfig.is_known_key(key):
        value = ctx.config.get(key)
    else:
        value = ctx.store.get_config(key)
    if value is None:
        click.echo(f"Config key not found: {key}", err=True)
        raise SystemExit(1)

    if ctx.json_output:
        ctx.output({key: value})
    else:
        click.echo(value)


@config_cmd.command("set")
@click.argument("key")
@click.argument("value")
@pass_ctx
def config_set(ctx: TracklineContext, key: str, value: str) -> None:
    """Set a config value."""
    ctx.ensure_initialized()
    assert ctx.store is not None and ctx.config is not None and ctx.data_dir is not None

    if TracklineConfig.is_known_key(key):
        # Reload so env overrides are not persisted.
        file_config = TracklineConfig.load_file(ctx.data_dir)
        file_config.set(key, value)
        file_config.save(ctx.data_dir)
        if key == "issue-prefix":
            ctx.store.set_config("issue_prefix", file_config.issue_prefix)
    else:
        ctx.store.set_config(key, value)

    if not ctx.quiet and not ctx.json_output:
        click.echo(f"Set {key} = {value}")


@config_cmd.command("list")
@pass_ctx
def config_list(ctx: TracklineContext) -> None:
    """List all config values."""
    ctx.ensure_initialized()
    assert ctx.store is not None and ctx.config is not None

    configs: dict = dict(ctx.store.list_config())
    configs.update(ctx.config.to_dict())

    if ctx.json_output:
        ctx.output(configs)
        return

    if not configs:
        click.echo("No config values set.")
        return

    for key, value in sorted(configs.items()):
        click.echo(f"  {key} = {value}")
