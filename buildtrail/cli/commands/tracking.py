"""``buildtrail init|add|remove|list``: manage the tracking file."""

from __future__ import annotations

from pathlib import Path

import typer

from buildtrail.cli.common import (
    console,
    load_settings,
    open_registry,
    renderer,
    reporting_errors,
)
from buildtrail.core.tracking import DEFAULT_SOURCE_ID, init_tracking
from buildtrail.models.artifacts import ArtifactEntry, RepoRef


def init_cmd(
    url: str = typer.Option(
        None,
        "--url",
        "-u",
        help="GitLab instance URL (defaults to BUILDTRAIL_GITLAB_URL).",
    ),
) -> None:
    """Create the buildtrail home directory and an empty tracking file."""
    settings = load_settings()
    with reporting_errors():
        path = init_tracking(
            settings.home,
            url or settings.gitlab_url,
            tracking_file=settings.tracking_file,
        )
    console.print(f"[bold green]Initialized[/bold green] {path}")
    console.print("[dim]Track an artifact with: buildtrail add NAME PATH --project ID[/dim]")


def add_cmd(
    name: str = typer.Argument(..., help="Name of the artifact."),
    path: Path = typer.Argument(..., help="Where the artifact lives on this host."),
    project: str = typer.Option(
        None, "--project", "-p", help="Project id or path (omit for an unmapped artifact)."
    ),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch to follow."),
    job: str = typer.Option("build", "--job", "-j", help="Job that produces the artifact."),
    pattern: str = typer.Option(
        None, "--pattern", help="Suffix of the file to extract from the job archive."
    ),
    source: str = typer.Option(
        DEFAULT_SOURCE_ID, "--source", "-s", help="Configured source id."
    ),
) -> None:
    """Start tracking an artifact."""
    repo_ref = None
    if project:
        repo_ref = RepoRef(
            source=source,
            project=project,
            branch=branch,
            job_name=job,
            artifact_pattern=pattern,
        )
    with open_registry() as registry:
        entry = registry.add(ArtifactEntry(name=name, repo_ref=repo_ref, local_path=path))
    console.print(f"[bold green]Tracking[/bold green] {entry.name} at {entry.local_path}")


def remove_cmd(
    name: str = typer.Argument(..., help="Name of the artifact."),
) -> None:
    """Stop tracking an artifact (the file and its history are kept)."""
    with open_registry() as registry:
        registry.remove(name)
    console.print(f"[bold]Stopped tracking[/bold] {name}")


def list_cmd() -> None:
    """List tracked artifacts."""
    with open_registry() as registry:
        entries = registry.entries()
    if not entries:
        console.print("[dim]No artifacts tracked.[/dim]")
        return
    console.print(renderer.render_entries(entries))
