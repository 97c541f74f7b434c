"""Query the remote content catalog."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from depotvault.core.catalog import CatalogClient, create_catalog_client
from depotvault.core.config import AppConfig
from depotvault.core.errors import DepotVaultError
from depotvault.core.store import ConfigStore
from depotvault.core.types import select_primary_depot

T = TypeVar("T")


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


def _run_with_client(config: AppConfig, action: Callable[[CatalogClient], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh catalog client and close it afterwards."""
    store = ConfigStore(config.store_path, managed_root=config.root)

    async def runner() -> T:
        client = create_catalog_client(config.catalog, store)
        try:
            return await action(client)
        finally:
            await client.close()

    return asyncio.run(runner())


def _fail(console: Console, error: Exception, debug: bool) -> None:
    console.print(f"[red]Error: {error}[/red]")
    if debug:
        import traceback
        console.print(traceback.format_exc())
    raise click.Abort() from error


@click.group("catalog", short_help="Query the content catalog.")
def catalog_group() -> None:
    """Query branches, builds and depot manifests from the catalog."""
    pass


@catalog_group.command("branches")
@click.pass_context
def list_branches(ctx: click.Context) -> None:
    """List catalog branches and their current builds."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        info = _run_with_client(config, lambda client: client.product_info())
        rows = [
            {
                "branch": branch.key,
                "build_id": branch.build_id,
                "time_updated": branch.time_updated.isoformat() if branch.time_updated else None,
                "password_required": branch.password_required,
                "description": branch.description,
            }
            for branch in sorted(info.branches.values(), key=lambda b: b.key)
        ]

        if config.output_format == "json":
            _output_json({"app_id": info.app_id, "changenumber": info.changenumber, "branches": rows})
            return

        table = Table(title=f"Branches of app {info.app_id}", show_header=True)
        table.add_column("Branch", style="cyan")
        table.add_column("Build ID", style="yellow", justify="right")
        table.add_column("Updated", style="blue")
        if verbose:
            table.add_column("Password", justify="center")
            table.add_column("Description", style="dim")

        for row in rows:
            cells = [row["branch"], row["build_id"], (row["time_updated"] or "N/A")[:19].replace("T", " ")]
            if verbose:
                cells += ["yes" if row["password_required"] else "", row["description"] or ""]
            table.add_row(*cells)

        console.print(table)
        console.print(f"\n[green]Changenumber: {info.changenumber}[/green]")

    except DepotVaultError as e:
        _fail(console, e, debug)


@catalog_group.command("depots")
@click.argument("branch_key")
@click.option("--build-id", help="Build to resolve, defaults to the current build")
@click.pass_context
def list_depots(ctx: click.Context, branch_key: str, build_id: str | None) -> None:
    """Show the depot manifests of a build on BRANCH_KEY."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        depots = _run_with_client(
            config, lambda client: client.resolve_depots_for_branch(branch_key, build_id)
        )
        primary = select_primary_depot(depots, config.catalog.primary_depot_ids)

        if config.output_format == "json":
            _output_json({
                "branch": branch_key,
                "build_id": build_id,
                "primary_depot": primary.depot_id if primary else None,
                "depots": [d.model_dump() for d in depots],
            })
            return

        if not depots:
            console.print(f"[yellow]No depot manifests published for {branch_key}[/yellow]")
            return

        table = Table(title=f"Depots on {branch_key}", show_header=True)
        table.add_column("Depot", style="cyan")
        table.add_column("Manifest", style="yellow", no_wrap=True)
        table.add_column("Size", justify="right")
        table.add_column("Primary", justify="center")
        for depot in depots:
            table.add_row(
                depot.depot_id,
                depot.manifest_id,
                str(depot.size) if depot.size is not None else "N/A",
                "[green]*[/green]" if depot == primary else "",
            )
        console.print(table)

    except DepotVaultError as e:
        _fail(console, e, debug)


@catalog_group.command("recent")
@click.argument("branch_key")
@click.option("--max-count", "-n", type=int, help="Builds to show, defaults to the stored setting")
@click.pass_context
def recent_builds(ctx: click.Context, branch_key: str, max_count: int | None) -> None:
    """List recent builds of BRANCH_KEY, current build first."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        if max_count is None:
            max_count = ConfigStore(config.store_path, managed_root=config.root).get_max_recent_builds()
        result = _run_with_client(
            config, lambda client: client.recent_builds_for_branch(branch_key, max_count)
        )

        if config.output_format == "json":
            _output_json(result.model_dump() | {"actual_count": result.actual_count})
            return

        table = Table(title=f"Recent builds of {branch_key}", show_header=True)
        table.add_column("Build ID", style="yellow", justify="right")
        table.add_column("Manifest", style="cyan", no_wrap=True)
        table.add_column("Updated", style="blue")
        table.add_column("Current", justify="center")
        for build in result.builds:
            table.add_row(
                build.build_id,
                build.manifest_id or "N/A",
                build.time_updated.strftime("%Y-%m-%d %H:%M") if build.time_updated else "N/A",
                "[green]*[/green]" if build.is_current else "",
            )
        console.print(table)

        if not result.history_available:
            console.print("[dim]The catalog reports no build history for this branch[/dim]")

    except DepotVaultError as e:
        _fail(console, e, debug)


@catalog_group.command("check-updates")
@click.pass_context
def check_updates(ctx: click.Context) -> None:
    """Compare the catalog changenumber with the last one seen."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        check = _run_with_client(config, lambda client: client.check_for_updates())

        if config.output_format == "json":
            _output_json(check.model_dump())
            return

        if check.update_available:
            console.print(
                f"[green]Catalog changed: {check.last_known or 'none'} -> {check.changenumber}[/green]"
            )
        else:
            console.print(f"[dim]No changes since changenumber {check.changenumber}[/dim]")

    except DepotVaultError as e:
        _fail(console, e, debug)
