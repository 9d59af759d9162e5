"""Main Typer application: imports and registers all CLI commands.

Entry point: ``buildtrail`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from buildtrail.cli.commands.status import (
    history_cmd,
    log_cmd,
    scan_cmd,
    search_cmd,
    status_cmd,
)
from buildtrail.cli.commands.sync import rebuild_cmd, recover_cmd, rollback_cmd, update_cmd
from buildtrail.cli.commands.tracking import add_cmd, init_cmd, list_cmd, remove_cmd
from buildtrail.cli.common import configure_logging, load_settings

app = typer.Typer(
    name="buildtrail",
    help="Buildtrail: keep locally installed CI build artifacts in step with their repositories.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Log every step at DEBUG level."
    ),
) -> None:
    """Buildtrail command-line interface."""
    settings = load_settings()
    configure_logging(
        "DEBUG" if verbose else settings.log_level,
        rich_tracebacks=not settings.is_production,
    )


# Tracking
app.command(name="init", help="Create the tracking file.")(init_cmd)
app.command(name="add", help="Track an artifact.")(add_cmd)
app.command(name="remove", help="Stop tracking an artifact.")(remove_cmd)
app.command(name="list", help="List tracked artifacts.")(list_cmd)

# Inspection
app.command(name="scan", help="Classify every tracked artifact.")(scan_cmd)
app.command(name="status", help="Show one artifact's state.")(status_cmd)
app.command(name="history", help="Show the remote build history of an artifact.")(history_cmd)
app.command(name="log", help="Show the action log of an artifact.")(log_cmd)
app.command(name="search", help="Search projects on a GitLab source.")(search_cmd)

# Mutations
app.command(name="update", help="Install the newest (or a given) build.")(update_cmd)
app.command(name="rollback", help="Undo recorded changes.")(rollback_cmd)
app.command(name="rebuild", help="Rebuild an expired version upstream.")(rebuild_cmd)
app.command(name="recover", help="Clean up after interrupted updates.")(recover_cmd)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()
