"""tl sync - sync database with JSONL."""

from __future__ import annotations

import os

import click

from trackline.cli import TracklineContext, pass_ctx
from trackline.config import get_jsonl_path
from trackline.errors import ConflictError
from trackline.sync.export import ExportConfig, export_to_jsonl, finalize_export
from trackline.sync.importer import OrphanMode, import_from_jsonl
from trackline.sync.merge import (
    ConflictResolution, apply_merge, load_merge_context, save_base_snapshot, three_way_merge,
)
from trackline.sync.preflight import PreflightCheckStatus, preflight_export, preflight_import

_CHECK_MARKS = {
    PreflightCheckStatus.PASS: "ok",
    PreflightCheckStatus.WARN: "warn",
    PreflightCheckStatus.FAIL: "FAIL",
}


@click.command("sync")
@click.option("--flush-only", is_flag=True, help="Only export DB to JSONL")
@click.option("--import-only", is_flag=True, help="Only import JSONL into the DB")
@click.option("--force", is_flag=True,
              help="Export even with nothing dirty or if it would drop issues from the JSONL")
@click.option("--output", "-o", default=None, help="Export to this path instead of the default")
@click.option("--rename-on-import", is_flag=True, help="Rename issues with a foreign prefix")
@click.option("--orphans", "orphan_mode", default=None,
              type=click.Choice(["strict", "resurrect", "skip", "allow"]),
              help="How to treat dependencies on missing issues")
@click.option("--check", is_flag=True, help="Run preflight checks only; change nothing")
@click.option("--merge", is_flag=True,
              help="Three-way merge the database and JSONL against the last merged base")
@click.option("--strategy", default="prefer-newer", show_default=True,
              type=click.Choice([s.value for s in ConflictResolution]),
              help="How --merge resolves issues changed on both sides")
@pass_ctx
def sync_cmd(ctx: TracklineContext, flush_only: bool, import_only: bool, force: bool,
             output: str | None, rename_on_import: bool, orphan_mode: str | None,
             check: bool, merge: bool, strategy: str) -> None:
    """Sync database with JSONL file.

    Without flags, imports the JSONL file and then exports the database
    back to it. The export is skipped when no issue is dirty.
    """
    if flush_only and import_only:
        raise click.UsageError("--flush-only and --import-only are mutually exclusive")
    if merge and (flush_only or import_only or check or output):
        raise click.UsageError(
            "--merge cannot be combined with --flush-only, --import-only, --check or --output")

    # A merge must see the JSONL as it is, before any import touches the DB.
    ctx.ensure_initialized(auto_import=not merge)
    assert ctx.store is not None and ctx.data_dir is not None and ctx.config is not None

    jsonl_path = get_jsonl_path(ctx.data_dir)
    export_path = os.path.abspath(output) if output else jsonl_path
    export_config = ctx.config.export_config(
        ctx.data_dir, force=force, is_default_path=export_path == jsonl_path,
        allow_external_jsonl=bool(output),
    )

    if merge:
        _run_merge(ctx, jsonl_path, export_config, ConflictResolution.parse(strategy))
        return

    import_overrides = {"rename_on_import": rename_on_import}
    if orphan_mode:
        import_overrides["orphan_mode"] = OrphanMode.parse(orphan_mode)
    import_config = ctx.config.import_config(ctx.data_dir, ctx.actor, **import_overrides)

    do_import = not flush_only and os.path.isfile(jsonl_path)
    do_export = not import_only

    if check:
        results = []
        if do_import:
            results.append(("import", preflight_import(jsonl_path, import_config)))
        if do_export:
            results.append(("export", preflight_export(ctx.store, export_path, export_config)))
        _report_preflight(ctx, results)
        return

    if do_import:
        result = import_from_jsonl(ctx.store, jsonl_path, import_config)
        if not ctx.quiet and not ctx.json_output:
            click.echo(
                f"Imported: {result.created} new, {result.updated} updated, "
                f"{result.unchanged} unchanged, {result.skipped} skipped"
            )
            for old, new in sorted(result.renamed.items()):
                click.echo(f"  renamed {old} → {new}")
            for old, new in sorted(result.remapped.items()):
                click.echo(f"  remapped {old} → {new}")

    if not do_export:
        return

    export_result, report = export_to_jsonl(ctx.store, export_path, export_config)
    finalize_export(ctx.store, export_result, export_config)

    if ctx.json_output:
        ctx.output({
            "written": export_result.written,
            "exported": export_result.exported_count,
            "skipped_tombstones": export_result.skipped_tombstone_ids,
            "content_hash": export_result.content_hash,
            "path": export_result.output_path,
            "errors": [e.summary() for e in report.errors],
        })
        return

    for err in report.errors:
        click.echo(f"Warning: {err.summary()}", err=True)
    if ctx.quiet:
        return
    if export_result.written:
        click.echo(f"Exported {export_result.exported_count} issues to {export_path}")
    else:
        click.echo("Nothing to export (no dirty issues)")


def _run_merge(ctx: TracklineContext, jsonl_path: str, export_config: ExportConfig,
               strategy: ConflictResolution) -> None:
    assert ctx.store is not None and ctx.data_dir is not None

    context = load_merge_context(ctx.store, jsonl_path, ctx.data_dir)
    report = three_way_merge(context, strategy, context.base_tombstones())
    if report.has_conflicts():
        listing = "; ".join(f"{issue_id} ({kind.value})" for issue_id, kind in report.conflicts)
        raise ConflictError(f"merge conflicts: {listing}", "merge")

    changed = apply_merge(ctx.store, context, report, ctx.actor)

    # The merged database is the new truth; rewrite the JSONL to match it.
    export_config.force = True
    export_result, _ = export_to_jsonl(ctx.store, jsonl_path, export_config)
    finalize_export(ctx.store, export_result, export_config)
    save_base_snapshot({issue.id: issue for issue in report.kept}, ctx.data_dir)

    if ctx.json_output:
        ctx.output({
            "kept": len(report.kept),
            "deleted": report.deleted,
            "changed": changed,
            "tombstone_protected": report.tombstone_protected,
            "notes": [{"id": issue_id, "note": note} for issue_id, note in report.notes],
            "exported": export_result.exported_count,
        })
        return
    if ctx.quiet:
        return
    click.echo(f"Merged: {len(report.kept)} kept, {len(report.deleted)} deleted, "
               f"{len(changed)} changed in the database")
    for issue_id, note in report.notes:
        click.echo(f"  {issue_id}: {note}")
    click.echo(f"Exported {export_result.exported_count} issues to {jsonl_path}")


def _report_preflight(ctx: TracklineContext, results: list) -> None:
    if ctx.json_output:
        ctx.output({
            phase: [
                {"name": c.name, "status": c.status.value, "message": c.message,
                 "remediation": c.remediation}
                for c in result.checks
            ]
            for phase, result in results
        })
    else:
        for phase, result in results:
            click.echo(f"{phase}:")
            for c in result.checks:
                click.echo(f"  [{_CHECK_MARKS[c.status]:>4}] {c.name}: {c.message}")
                if c.remediation and c.status is not PreflightCheckStatus.PASS:
                    click.echo(f"         {c.remediation}")
    if any(not result.has_no_failures() for _, result in results):
        raise SystemExit(1)
