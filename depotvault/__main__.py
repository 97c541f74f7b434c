"""Main entry point for the depotvault CLI."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import click
import structlog
from rich.console import Console

from depotvault import __version__
from depotvault.commands.catalog import catalog_group
from depotvault.commands.download import download_group
from depotvault.commands.migrate import migrate_group
from depotvault.commands.versions import versions_group
from depotvault.core.config import AppConfig


def configure_logging(level: str = "INFO", colors: bool = False) -> None:
    """Configure structlog for console output."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


# Configure structured logging
configure_logging()

logger = structlog.get_logger()


@click.group()
@click.version_option(version=__version__, prog_name="depotvault")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", "-d", is_flag=True, help="Enable debug output")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["rich", "json", "plain"], case_sensitive=False),
    default="rich",
    help="Output format",
)
@click.pass_context
def main(
    ctx: click.Context,
    config: Path | None,
    verbose: bool,
    debug: bool,
    output: str,
) -> None:
    """Manage side-by-side installed versions of a branch-based product."""
    ctx.ensure_object(dict)

    # Load configuration
    try:
        app_config = AppConfig.load(config)
    except (OSError, ValueError) as e:
        logger.error("config_load_failed", error=str(e))
        sys.exit(1)

    # Override config with CLI options
    if verbose or debug:
        app_config.log_level = "DEBUG" if debug else "INFO"
    if output:
        app_config.output_format = output

    # Configure logging level
    if debug:
        configure_logging("DEBUG", colors=True)
    else:
        configure_logging(app_config.log_level if verbose else "WARNING")

    # Create console for rich output
    console = Console(
        force_terminal=output == "rich",
        no_color=output != "rich",
        width=None if output == "rich" else 120,
    )

    # Store config and console in context for subcommands
    ctx.obj["config"] = app_config
    ctx.obj["console"] = console
    ctx.obj["verbose"] = verbose or debug
    ctx.obj["debug"] = debug

    logger.debug("cli_initialized", config=app_config.model_dump(mode="json"))


@main.command()
@click.pass_context
def version(ctx: click.Context) -> None:
    """Show version information."""
    console: Console = ctx.obj["console"]
    config: AppConfig = ctx.obj["config"]

    if config.output_format == "json":
        import json

        info = {
            "name": "depotvault",
            "version": __version__,
            "python_version": sys.version.replace("\n", " "),
            "platform": sys.platform,
        }
        # Use regular print for JSON to avoid Rich formatting
        print(json.dumps(info, indent=2))
    else:
        console.print(f"depotvault {__version__}")
        if ctx.obj["verbose"]:
            console.print(f"Python {sys.version}")
            console.print(f"Platform: {sys.platform}")


# Register commands
main.add_command(catalog_group)
main.add_command(download_group)
main.add_command(migrate_group)
main.add_command(versions_group)


def handle_exception(exc_type: type[BaseException], exc_value: BaseException, exc_traceback: Any) -> None:
    """Handle uncaught exceptions."""
    if issubclass(exc_type, KeyboardInterrupt):
        logger.info("operation_cancelled")
        sys.exit(1)

    logger.error(
        "uncaught_exception",
        exc_info=(exc_type, exc_value, exc_traceback),
    )
    sys.exit(1)


if __name__ == "__main__":
    # Install exception handler
    sys.excepthook = handle_exception
    main()
