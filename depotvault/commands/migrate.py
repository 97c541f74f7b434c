"""Migrate legacy flat installs into the versioned layout."""

from __future__ import annotations

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from depotvault.core.config import AppConfig
from depotvault.core.errors import DepotVaultError, MigrationUnresolved
from depotvault.core.migration import MigrationEngine
from depotvault.core.store import ConfigStore
from depotvault.core.types import VersionKind


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    debug: bool = ctx.obj["debug"]
    return config, console, verbose, debug


def _output_json(data: Any) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=2, default=str))


def _create_engine(config: AppConfig) -> MigrationEngine:
    store = ConfigStore(config.store_path, managed_root=config.root)
    return MigrationEngine(
        config.root,
        store,
        app_id=config.catalog.app_id,
        primary_depot_ids=config.catalog.primary_depot_ids,
    )


@click.group("migrate", short_help="Migrate legacy installs.")
def migrate_group() -> None:
    """Move legacy flat installs into version directories.

    A legacy install keeps its files directly in the branch directory.
    Migration reads the installed manifest ID from the install's app
    manifest and moves everything into ``manifest_<id>`` (or ``build_<id>``).
    """
    pass


@migrate_group.command("detect")
@click.pass_context
def detect_legacy(ctx: click.Context) -> None:
    """List branches still in legacy flat form."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        engine = _create_engine(config)
        installations = engine.detect()
        rows = []
        for installation in installations:
            row: dict[str, Any] = {"branch": installation.branch, "path": str(installation.path)}
            try:
                depot = engine.extract_manifest(installation)
                row.update(depot_id=depot.depot_id, manifest_id=depot.manifest_id, resolvable=True)
            except MigrationUnresolved as e:
                row.update(depot_id=None, manifest_id=None, resolvable=False, reason=str(e))
            rows.append(row)

        if config.output_format == "json":
            _output_json(rows)
            return

        if not rows:
            console.print("[green]No legacy installations found[/green]")
            return

        table = Table(title="Legacy Installations", show_header=True)
        table.add_column("Branch", style="cyan")
        table.add_column("Depot", style="green")
        table.add_column("Manifest", style="yellow", no_wrap=True)
        table.add_column("Status")
        for row in rows:
            table.add_row(
                row["branch"],
                row["depot_id"] or "N/A",
                row["manifest_id"] or "N/A",
                "[green]ready[/green]" if row["resolvable"] else "[red]unresolved[/red]",
            )
        console.print(table)

    except DepotVaultError as e:
        console.print(f"[red]Error: {e}[/red]")
        if debug:
            import traceback
            console.print(traceback.format_exc())
        raise click.Abort() from e


@migrate_group.command("run")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in VersionKind]),
    default=VersionKind.MANIFEST.value,
    help="Name version directories after the manifest or build",
)
@click.pass_context
def run_migration(ctx: click.Context, kind: str) -> None:
    """Migrate every resolvable legacy install."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        engine = _create_engine(config)
        report = engine.migrate_all(VersionKind(kind))

        if config.output_format == "json":
            _output_json({
                "affected": report.affected,
                "migrated": [
                    {"branch": i.branch, "target": str(i.target), "state": i.state.value}
                    for i in report.migrated
                ],
                "skipped": [{"branch": s.branch, "reason": s.reason} for s in report.skipped],
                "failed": [
                    {"branch": i.branch, "state": i.state.value, "error": i.error}
                    for i in report.failed
                ],
            })
        else:
            for installation in report.migrated:
                console.print(f"[green]Migrated {installation.branch} -> {installation.target.name}[/green]")
            for skipped in report.skipped:
                console.print(f"[yellow]Skipped {skipped.branch}: {skipped.reason}[/yellow]")
            for installation in report.failed:
                console.print(f"[red]Failed {installation.branch} ({installation.state}): {installation.error}[/red]")
            console.print(f"\n{report.affected} installation(s) migrated")

        if not report.success:
            raise click.Abort()

    except DepotVaultError as e:
        console.print(f"[red]Error: {e}[/red]")
        if debug:
            import traceback
            console.print(traceback.format_exc())
        raise click.Abort() from e


@migrate_group.command("validate")
@click.pass_context
def validate_layout(ctx: click.Context) -> None:
    """Check the managed root for leftover legacy files and empty versions."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        report = _create_engine(config).validate_layout()

        if config.output_format == "json":
            _output_json({
                "valid": report.is_valid,
                "legacy_branches": report.legacy_branches,
                "empty_version_dirs": [str(p) for p in report.empty_version_dirs],
            })
        elif report.is_valid:
            console.print("[green]Layout is valid[/green]")
        else:
            for branch in report.legacy_branches:
                console.print(f"[yellow]{branch} is still in legacy layout[/yellow]")
            for path in report.empty_version_dirs:
                console.print(f"[yellow]Empty version directory: {path}[/yellow]")

        if not report.is_valid:
            raise click.Abort()

    except DepotVaultError as e:
        console.print(f"[red]Error: {e}[/red]")
        if debug:
            import traceback
            console.print(traceback.format_exc())
        raise click.Abort() from e
