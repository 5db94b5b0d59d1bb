"""tl init - initialize a new .trackline/ directory."""

from __future__ import annotations

import os
import re

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.config import DATA_DIR_NAME, MetadataConfig, TracklineConfig
from trackline.storage import open_storage

_PREFIX_RE = re.compile(r"^[a-z0-9_]+(?:-[a-z0-9_]+)*$")


def default_prefix(directory: str) -> str:
    prefix = os.path.basename(os.path.abspath(directory)).lower()
    prefix = "".join(c if c.isalnum() or c == "_" else "-" for c in prefix)
    prefix = re.sub(r"-+", "-", prefix).strip("-")
    return prefix or "tl"


@click.command("init")
@click.option("--prefix", help="Issue prefix (default: directory name)")
@pass_ctx
def init_cmd(ctx: TracklineContext, prefix: str | None) -> None:
    """Initialize a new trackline project in the current directory."""
    data_dir = os.path.join(os.getcwd(), DATA_DIR_NAME)

    if os.path.exists(data_dir):
        click.echo(f"trackline already initialized at {data_dir}")
        return

    prefix = (prefix or default_prefix(os.getcwd())).lower()
    if not _PREFIX_RE.match(prefix):
        click.echo(f"Error: invalid issue prefix {prefix!r} "
                   "(lowercase letters, digits, '_' and '-')", err=True)
        raise SystemExit(1)

    os.makedirs(data_dir, exist_ok=True)

    TracklineConfig(issue_prefix=prefix).save(data_dir)
    meta = MetadataConfig()
    meta.save(data_dir)

    with open(os.path.join(data_dir, ".gitignore"), "w") as f:
        f.write("# trackline local files (not shared via git)\n")
        f.write("*.db\n")
        f.write("*.db-wal\n")
        f.write("*.db-shm\n")
        f.write("*.jsonl.tmp\n")
        f.write(".history/\n")
        f.write("base.jsonl\n")

    store = open_storage(os.path.join(data_dir, meta.database))
    try:
        store.set_config("issue_prefix", prefix)
    finally:
        store.close()

    click.echo(f"Initialized trackline in {data_dir}")
    click.echo(f"  Issue prefix: {prefix}")
    click.echo(f"  Database: {meta.database}")
