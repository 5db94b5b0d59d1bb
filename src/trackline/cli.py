"""Click CLI root and global flags for trackline (tl)."""

from __future__ import annotations

import json
import logging
import sys

import click

from trackline import __version__
from trackline.config import (
    ENV_ACTOR, ENV_DB, TracklineConfig, find_data_dir, get_actor, get_db_path, get_jsonl_path,
)
from trackline.errors import TracklineError
from trackline.models import EXTERNAL_PREFIX
from trackline.storage.sqlite_store import SQLiteStorage
from trackline.sync.export import auto_flush
from trackline.sync.importer import auto_import_if_needed

logger = logging.getLogger(__name__)


class TracklineContext:
    """Shared context for all commands."""

    def __init__(self) -> None:
        self.data_dir: str | None = None
        self.store: SQLiteStorage | None = None
        self.config: TracklineConfig | None = None
        self.db_override: str | None = None
        self.actor: str = ""
        self.json_output: bool = False
        self.verbose: bool = False
        self.quiet: bool = False

    def ensure_initialized(self, auto_import: bool = True) -> None:
        """Open the project's store, importing the JSONL file if it changed."""
        if self.store is not None:
            return
        self.data_dir = find_data_dir()
        if self.data_dir is None:
            click.echo("Error: not in a trackline project (no .trackline/ directory found)",
                       err=True)
            click.echo("Run 'tl init' to create one", err=True)
            sys.exit(1)
        self.config = TracklineConfig.load(self.data_dir)
        if self.db_override:
            self.config.db = self.db_override
        if not self.actor:
            self.actor = get_actor(self.config)
        if not self.json_output:
            self.json_output = self.config.json_output

        db_path = get_db_path(self.data_dir, self.config)
        self.store = SQLiteStorage(
            db_path,
            lock_timeout_ms=self.config.lock_timeout_ms,
            id_config=self.config.id_config(),
            external_projects=self.config.external_projects,
        )
        click.get_current_context().call_on_close(self.store.close)

        if self.config.issue_prefix and not self.store.get_config("issue_prefix"):
            self.store.set_config("issue_prefix", self.config.issue_prefix)

        if auto_import and not self.config.no_auto_import:
            result = auto_import_if_needed(
                self.store, self.data_dir, get_jsonl_path(self.data_dir),
                self.config.import_config(self.data_dir),
            )
            if result is not None:
                logger.info("auto-imported %d new, %d updated issues",
                            result.created, result.updated)

    def auto_flush(self) -> None:
        """Export dirty issues to the JSONL file unless disabled."""
        if not self.data_dir or not self.store or not self.config:
            return
        if self.config.no_auto_flush:
            return
        auto_flush(self.store, self.data_dir, get_jsonl_path(self.data_dir),
                   self.config.export_config(self.data_dir))

    def resolve_issue_id(self, partial: str) -> str:
        """Resolve a partial issue ID or exit with error."""
        assert self.store is not None
        full_id = self.store.resolve_id(partial)
        if full_id is None:
            click.echo(f"Error: issue not found or ambiguous: {partial}", err=True)
            sys.exit(1)
        return full_id

    def resolve_dependency_target(self, target: str) -> str:
        """Like resolve_issue_id, but ``external:`` references pass through."""
        if target.startswith(EXTERNAL_PREFIX):
            return target
        return self.resolve_issue_id(target)

    def output(self, data: dict | list) -> None:
        """Output data as JSON."""
        click.echo(json.dumps(data, indent=2, default=str))


pass_ctx = click.make_pass_decorator(TracklineContext, ensure=True)


class TracklineGroup(click.Group):
    """Renders TracklineError as ``Error: <message>`` with exit status 1."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except TracklineError as e:
            logger.debug("command failed: %s", e.detail())
            click.echo(f"Error: {e.message}", err=True)
            ctx.exit(1)


@click.group(cls=TracklineGroup, invoke_without_command=True)
@click.option("--db", envvar=ENV_DB, help="Path to database file")
@click.option("--actor", envvar=ENV_ACTOR, help="Actor name for audit trails")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.version_option(__version__, prog_name="tl")
@click.pass_context
def cli(ctx: click.Context, db: str | None, actor: str | None,
        json_output: bool, verbose: bool, quiet: bool) -> None:
    """tl - local issue tracker with JSONL sync"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    tctx = ctx.ensure_object(TracklineContext)
    tctx.verbose = verbose
    tctx.quiet = quiet
    if json_output:
        tctx.json_output = True
    if actor:
        tctx.actor = actor
    if db:
        tctx.db_override = db

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# --- Register all command groups ---

from trackline.commands.init_cmd import init_cmd  # noqa: E402
from trackline.commands.create import create  # noqa: E402
from trackline.commands.list_cmd import list_cmd  # noqa: E402
from trackline.commands.show import show  # noqa: E402
from trackline.commands.update import update  # noqa: E402
from trackline.commands.close import close, delete  # noqa: E402
from trackline.commands.ready import ready  # noqa: E402
from trackline.commands.blocked import blocked  # noqa: E402
from trackline.commands.dep import dep  # noqa: E402
from trackline.commands.labels import label  # noqa: E402
from trackline.commands.comments import comment, comments  # noqa: E402
from trackline.commands.sync_cmd import sync_cmd  # noqa: E402
from trackline.commands.history import history  # noqa: E402
from trackline.commands.config_cmd import config_cmd  # noqa: E402

cli.add_command(init_cmd, "init")
cli.add_command(create, "create")
cli.add_command(create, "new")  # Alias
cli.add_command(list_cmd, "list")
cli.add_command(show, "show")
cli.add_command(update, "update")
cli.add_command(close, "close")
cli.add_command(delete, "delete")
cli.add_command(ready, "ready")
cli.add_command(blocked, "blocked")
cli.add_command(dep, "dep")
cli.add_command(label, "label")
cli.add_command(comments, "comments")
cli.add_command(comment, "comment")
cli.add_command(sync_cmd, "sync")
cli.add_command(history, "history")
cli.add_command(config_cmd, "config")


def main() -> None:
    cli()
