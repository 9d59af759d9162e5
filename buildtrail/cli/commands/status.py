"""``buildtrail scan|status|history|log|search``: read-only inspection."""

from __future__ import annotations

import typer
from rich.markup import escape
from rich.table import Table

from buildtrail.cli.common import console, open_registry, renderer
from buildtrail.core.errors import ActionLogIntegrityError, ConfigurationError
from buildtrail.core.tracking import DEFAULT_SOURCE_ID
from buildtrail.models.versions import Classification
from buildtrail.providers.gitlab import GitLabProvider


def scan_cmd(
    strict: bool = typer.Option(
        False, "--strict", help="Exit with code 1 unless every artifact is in sync."
    ),
) -> None:
    """Classify every tracked artifact against its build history."""
    with open_registry() as registry:
        report = registry.scan()
    console.print(renderer.render_scan(report))
    if not report.ok:
        raise typer.Exit(code=1)
    if strict and any(c is not Classification.IN_SYNC for c in report.classifications.values()):
        raise typer.Exit(code=1)


def status_cmd(
    name: str = typer.Argument(..., help="Name of the artifact."),
) -> None:
    """Show one artifact's state and the builds newer than it."""
    with open_registry() as registry:
        status = registry.status(name)
    console.print(renderer.render_status(status))


def history_cmd(
    name: str = typer.Argument(..., help="Name of the artifact."),
    limit: int = typer.Option(20, "--limit", "-n", help="How many builds to show."),
) -> None:
    """Show the remote build history of an artifact, newest first."""
    with open_registry() as registry:
        entry = registry.get(name)
        timeline = registry.timeline(name)
    if not timeline:
        console.print(f"[dim]No builds found for {name}.[/dim]")
        return
    console.print(
        renderer.render_timeline(timeline[:limit], installed=entry.current_version)
    )


def log_cmd(
    name: str = typer.Argument(..., help="Name of the artifact."),
    verify_chain: bool = typer.Option(
        False, "--verify-chain", "-V", help="Verify the hash chain before displaying."
    ),
) -> None:
    """Show the action log of an artifact, oldest first."""
    with open_registry() as registry:
        entries = registry.history(name)
        chain_valid = None
        if verify_chain:
            try:
                chain_valid = registry.verify_log(name)
            except ActionLogIntegrityError as exc:
                console.print(
                    f"[bold red]Chain verification failed:[/bold red] {escape(str(exc))}"
                )
                chain_valid = False
    if not entries:
        console.print(f"[dim]No actions recorded for {name}.[/dim]")
        return
    console.print(renderer.render_history(name, entries, chain_valid=chain_valid))
    if chain_valid is False:
        raise typer.Exit(code=1)


def search_cmd(
    query: str = typer.Argument("", help="Text to search project names for."),
    source: str = typer.Option(
        DEFAULT_SOURCE_ID, "--source", "-s", help="Configured source id."
    ),
    limit: int = typer.Option(30, "--limit", "-n", help="Maximum projects to list."),
) -> None:
    """List projects on a GitLab source that the token can see."""
    with open_registry() as registry:
        provider = registry.provider(source)
        if not isinstance(provider, GitLabProvider):
            raise ConfigurationError(f"Source {source!r} does not support project search")
        projects = provider.search_projects(query, limit=limit)

    if not projects:
        console.print("[dim]No projects found.[/dim]")
        return
    table = Table(title="Projects", header_style="bold cyan")
    table.add_column("ID", style="dim", justify="right")
    table.add_column("Path", style="cyan")
    table.add_column("Default branch")
    for project in projects:
        table.add_row(str(project.id), project.path_with_namespace, project.default_branch or "-")
    console.print(table)
