"""Inspect and switch installed versions."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from depotvault.core import paths
from depotvault.core.config import AppConfig
from depotvault.core.errors import DepotVaultError
from depotvault.core.store import ConfigStore
from depotvault.core.types import VersionKind


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    debug: bool = ctx.obj["debug"]
    return config, console, verbose, debug


def _open_store(config: AppConfig) -> ConfigStore:
    return ConfigStore(config.store_path, managed_root=config.root)


def _output_json(data: Any) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=2, default=str))


def _fail(console: Console, error: Exception, debug: bool) -> None:
    console.print(f"[red]Error: {error}[/red]")
    if debug:
        import traceback
        console.print(traceback.format_exc())
    raise click.Abort() from error


def _format_size(size: int | None) -> str:
    if size is None:
        return "N/A"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


@click.group("versions", short_help="Manage installed versions.")
def versions_group() -> None:
    """Inspect, locate and activate installed versions.

    Each branch keeps its versions side by side under
    ``<root>/branches/<branch>/build_<id>`` or ``manifest_<id>``; one of
    them is the active version.
    """
    pass


@versions_group.command("list")
@click.argument("branch", required=False)
@click.pass_context
def list_versions(ctx: click.Context, branch: str | None) -> None:
    """List installed versions, optionally for one BRANCH."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        store = _open_store(config)
        branches = [branch] if branch else paths.list_branches(config.root)
        rows = []
        for name in branches:
            active = store.get_active_version(name)
            records = {(r.kind, r.version_id): r for r in store.get_version_records(name)}
            for installed in paths.list_branch_versions(config.root, name):
                record = records.get((installed.kind, installed.version_id))
                rows.append({
                    "branch": name,
                    "kind": installed.kind.value,
                    "version_id": installed.version_id,
                    "build_id": record.build_id if record else None,
                    "manifest_id": record.manifest_id if record else None,
                    "active": active == (installed.kind, installed.version_id),
                    "size_bytes": installed.size_bytes,
                    "created": installed.created.isoformat(),
                    "path": str(installed.path),
                })

        if config.output_format == "json":
            _output_json(rows)
            return

        if not rows:
            console.print("[yellow]No installed versions found[/yellow]")
            return

        table = Table(title="Installed Versions", show_header=True)
        table.add_column("Branch", style="cyan")
        table.add_column("Kind", style="green")
        table.add_column("Version", style="yellow", no_wrap=True)
        table.add_column("Size", justify="right")
        table.add_column("Created", style="blue")
        table.add_column("Active", justify="center")
        if verbose:
            table.add_column("Path", style="dim")

        for row in rows:
            cells = [
                row["branch"],
                row["kind"],
                row["version_id"],
                _format_size(row["size_bytes"]),
                row["created"][:19].replace("T", " "),
                "[green]*[/green]" if row["active"] else "",
            ]
            if verbose:
                cells.append(row["path"])
            table.add_row(*cells)

        console.print(table)

    except DepotVaultError as e:
        _fail(console, e, debug)


@versions_group.command("path")
@click.argument("branch")
@click.option("--version-id", help="Version ID, defaults to the active version")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in VersionKind]),
    default=VersionKind.BUILD.value,
    help="Identifier kind of --version-id",
)
@click.pass_context
def version_path(ctx: click.Context, branch: str, version_id: str | None, kind: str) -> None:
    """Print the directory of a version of BRANCH."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        if version_id is None:
            store = _open_store(config)
            path = store.active_version_path(branch)
            if path is None:
                console.print(f"[yellow]No active version for {branch}[/yellow]")
                raise click.Abort()
        else:
            path = paths.ensure_within_root(
                config.root, paths.version_path(config.root, branch, version_id, VersionKind(kind))
            )

        if config.output_format == "json":
            _output_json({"branch": branch, "path": str(path), "exists": path.is_dir()})
        else:
            click.echo(str(path))

    except DepotVaultError as e:
        _fail(console, e, debug)


@versions_group.command("activate")
@click.argument("branch")
@click.argument("version_id")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in VersionKind]),
    help="Identifier kind, detected from a prefixed VERSION_ID when omitted",
)
@click.pass_context
def activate_version(ctx: click.Context, branch: str, version_id: str, kind: str | None) -> None:
    """Make VERSION_ID the active version of BRANCH."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        parsed = paths.parse_version_dir_name(version_id)
        if parsed is not None:
            version_kind, version_id = parsed
        else:
            version_kind = VersionKind(kind or VersionKind.BUILD.value)

        target: Path = paths.ensure_within_root(
            config.root, paths.version_path(config.root, branch, version_id, version_kind)
        )
        if not target.is_dir():
            console.print(f"[red]Error: {target.name} is not installed for {branch}[/red]")
            raise click.Abort()

        store = _open_store(config)
        store.activate_version(branch, version_kind, version_id)
        console.print(f"[green]Activated {target.name} for {branch}[/green]")

    except DepotVaultError as e:
        _fail(console, e, debug)


@versions_group.command("settings")
@click.option("--max-recent-builds", type=int, help="Number of recent builds to offer (1-50)")
@click.option("--launch-command", nargs=2, metavar="BRANCH COMMAND", help="Custom launch command for a branch")
@click.pass_context
def version_settings(
    ctx: click.Context,
    max_recent_builds: int | None,
    launch_command: tuple[str, str] | None,
) -> None:
    """Show or change version store settings."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        store = _open_store(config)
        if max_recent_builds is not None:
            applied = store.set_max_recent_builds(max_recent_builds)
            if applied != max_recent_builds:
                console.print(f"[yellow]Clamped max recent builds to {applied}[/yellow]")
        if launch_command:
            store.set_custom_launch_command(launch_command[0], launch_command[1] or None)

        document = store.load()
        settings = {
            "store": str(config.store_path),
            "managed_root": str(config.root),
            "schema_version": document.schema_version,
            "max_recent_builds": document.max_recent_builds,
            "custom_launch_commands": document.custom_launch_commands,
        }
        if config.output_format == "json":
            _output_json(settings)
            return

        for key, value in settings.items():
            console.print(f"{key}: [cyan]{value}[/cyan]")

    except DepotVaultError as e:
        _fail(console, e, debug)
