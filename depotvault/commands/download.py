"""Download versions with the external depot downloader."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn

from depotvault.core.catalog import create_catalog_client
from depotvault.core.config import AppConfig
from depotvault.core.downloader import Credentials, DownloadOrchestrator, DownloadOutcome
from depotvault.core.errors import AuthenticationRequired, DepotVaultError
from depotvault.core.store import ConfigStore
from depotvault.core.types import Branch, DepotRef, DownloadPhase, ProgressEvent, VersionKind

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


def credential_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Attach the account options shared by download commands."""
    func = click.option(
        "--wait-confirmation",
        is_flag=True,
        help="Keep waiting when the login asks for a mobile confirmation",
    )(func)
    func = click.option("--code", help="One-time login code, if the account asks for one")(func)
    func = click.option(
        "--password",
        envvar="DEPOTVAULT_PASSWORD",
        prompt=True,
        hide_input=True,
        help="Account password",
    )(func)
    func = click.option("--username", "-u", envvar="DEPOTVAULT_USERNAME", required=True, help="Account name")(func)
    return func


def _branch(folder: str, branch_key: str | None) -> Branch:
    if branch_key:
        return Branch(key=branch_key, folder=folder)
    return Branch.from_folder(folder)


def _render_event(progress: Progress, task_id: TaskID, event: ProgressEvent, verbose: bool) -> None:
    description = event.phase.value.replace("_", " ")
    if event.depot_index and event.depot_total:
        description = f"depot {event.depot_index}/{event.depot_total}"
    if event.phase == DownloadPhase.AUTH_REQUIRED:
        progress.console.print(f"[yellow]{event.message}[/yellow]")
    elif event.phase in (DownloadPhase.WAITING_FOR_CONFLICT, DownloadPhase.RETRY):
        progress.console.print(f"[yellow]{event.message}[/yellow]")
    elif verbose and event.message and event.phase == DownloadPhase.STREAMING:
        progress.console.print(f"[dim]{event.message}[/dim]")

    if event.percent is not None:
        progress.update(task_id, completed=event.percent, description=description)
    else:
        progress.update(task_id, description=description)


def _run_download(
    orchestrator: DownloadOrchestrator,
    console: Console,
    verbose: bool,
    show_progress: bool,
    start: Callable[[], Awaitable[T]],
) -> T:
    """Run a download while rendering its progress events."""

    async def runner() -> T:
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>5.1f}%"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
            disable=not show_progress,
        ) as progress:
            task_id = progress.add_task("preflight", total=100)

            async def consume() -> None:
                async for event in orchestrator.channel:
                    if show_progress:
                        _render_event(progress, task_id, event, verbose)

            consumer = asyncio.create_task(consume())
            try:
                return await start()
            except BaseException:
                orchestrator.cancel()
                raise
            finally:
                orchestrator.channel.close()
                await consumer
                if orchestrator.catalog is not None:
                    await orchestrator.catalog.close()

    return asyncio.run(runner())


def _report(console: Console, config: AppConfig, outcome: DownloadOutcome) -> None:
    if config.output_format == "json":
        _output_json({
            "branch": outcome.branch,
            "kind": outcome.kind.value,
            "version_id": outcome.version_id,
            "path": str(outcome.path),
            "completed_depots": outcome.completed_depots,
            "total_depots": outcome.total_depots,
            "build_id": outcome.record.build_id,
            "manifest_id": outcome.record.manifest_id,
        })
        return
    console.print(f"[green]Installed {outcome.path.name} for {outcome.branch}[/green]")
    console.print(f"Path: {outcome.path}")


def _handle_error(console: Console, error: DepotVaultError, debug: bool) -> None:
    if isinstance(error, AuthenticationRequired):
        console.print(
            f"[yellow]Login needs a {error.guard_type} confirmation; "
            "run again with --code or --wait-confirmation[/yellow]"
        )
    else:
        console.print(f"[red]Error: {error}[/red]")
    if error.retryable:
        console.print("[dim]This failure may succeed if retried[/dim]")
    if debug:
        import traceback
        console.print(traceback.format_exc())
    raise click.Abort() from error


@click.group("download", short_help="Download versions.")
def download_group() -> None:
    """Download builds or specific depot manifests into version directories.

    Downloads wait for a running product client to exit, then fetch each
    depot in turn. A version becomes active only when every depot finished.
    """
    pass


@download_group.command("build")
@click.argument("branch")
@click.option("--branch-key", help="Catalog branch key, derived from BRANCH when omitted")
@click.option("--build-id", help="Build to download, defaults to the branch's current build")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in VersionKind]),
    default=VersionKind.BUILD.value,
    help="Name the version directory after the build or the primary manifest",
)
@click.option("--overwrite", is_flag=True, help="Download into an existing version directory")
@credential_options
@click.pass_context
def download_build(
    ctx: click.Context,
    branch: str,
    branch_key: str | None,
    build_id: str | None,
    kind: str,
    overwrite: bool,
    username: str,
    password: str,
    code: str | None,
    wait_confirmation: bool,
) -> None:
    """Download a build of BRANCH (a folder name such as main-branch)."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        credentials = Credentials(
            username=username,
            password=password,
            two_factor_code=code,
            await_confirmation=wait_confirmation,
        )
        store = ConfigStore(config.store_path, managed_root=config.root)
        orchestrator = DownloadOrchestrator(config, store, catalog=create_catalog_client(config.catalog, store))
        target = _branch(branch, branch_key)

        outcome = _run_download(
            orchestrator,
            console,
            verbose,
            config.output_format != "json",
            lambda: orchestrator.download_version(
                target,
                credentials,
                build_id=build_id,
                kind=VersionKind(kind),
                overwrite=overwrite,
            ),
        )
        _report(console, config, outcome)

    except DepotVaultError as e:
        _handle_error(console, e, debug)


@download_group.command("manifest")
@click.argument("branch")
@click.argument("depot_id")
@click.argument("manifest_id")
@click.option("--branch-key", help="Catalog branch key, derived from BRANCH when omitted")
@click.option("--build-id", help="Build the manifest belongs to, if known")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in VersionKind]),
    default=VersionKind.MANIFEST.value,
    help="Keep the manifest-named directory or normalize to build naming",
)
@click.option("--overwrite", is_flag=True, help="Download into an existing version directory")
@credential_options
@click.pass_context
def download_manifest(
    ctx: click.Context,
    branch: str,
    depot_id: str,
    manifest_id: str,
    branch_key: str | None,
    build_id: str | None,
    kind: str,
    overwrite: bool,
    username: str,
    password: str,
    code: str | None,
    wait_confirmation: bool,
) -> None:
    """Download manifest MANIFEST_ID of DEPOT_ID into BRANCH."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        credentials = Credentials(
            username=username,
            password=password,
            two_factor_code=code,
            await_confirmation=wait_confirmation,
        )
        store = ConfigStore(config.store_path, managed_root=config.root)
        orchestrator = DownloadOrchestrator(config, store)
        depot = DepotRef(depot_id=depot_id, manifest_id=manifest_id)

        outcome = _run_download(
            orchestrator,
            console,
            verbose,
            config.output_format != "json",
            lambda: orchestrator.download_manifest(
                _branch(branch, branch_key),
                depot,
                credentials,
                kind=VersionKind(kind),
                build_id=build_id,
                overwrite=overwrite,
            ),
        )
        _report(console, config, outcome)

    except DepotVaultError as e:
        _handle_error(console, e, debug)


@download_group.command("login")
@credential_options
@click.pass_context
def check_login(
    ctx: click.Context,
    username: str,
    password: str,
    code: str | None,
    wait_confirmation: bool,
) -> None:
    """Test account credentials without downloading any content."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        credentials = Credentials(
            username=username,
            password=password,
            two_factor_code=code,
            await_confirmation=wait_confirmation,
        )
        store = ConfigStore(config.store_path, managed_root=config.root)
        orchestrator = DownloadOrchestrator(config, store)
        _run_download(
            orchestrator,
            console,
            verbose,
            config.output_format != "json",
            lambda: orchestrator.check_login(credentials),
        )

        if config.output_format == "json":
            _output_json({"success": True, "username": username})
        else:
            console.print(f"[green]Logged in as {username}[/green]")

    except DepotVaultError as e:
        _handle_error(console, e, debug)


@download_group.command("check")
@click.pass_context
def check_downloader(ctx: click.Context) -> None:
    """Check that the downloader executable runs."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        store = ConfigStore(config.store_path, managed_root=config.root)
        orchestrator = DownloadOrchestrator(config, store)
        version = asyncio.run(orchestrator.validate_installation())

        if config.output_format == "json":
            _output_json({"available": True, "version": version})
        else:
            console.print(f"[green]Downloader available (version {version})[/green]")

    except DepotVaultError as e:
        _handle_error(console, e, debug)
