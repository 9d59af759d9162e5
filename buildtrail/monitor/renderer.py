"""Rich terminal renderer for artifact status, timelines and the action log.

Every method returns a Rich renderable; printing is left to the caller.

Color scheme
------------
- green     : in-sync
- yellow    : outdated
- red       : drifted
- bold red  : missing
- magenta   : unresolved
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from buildtrail.models.action_log import ActionLogEntry, ActionOperation
from buildtrail.models.artifacts import ArtifactEntry
from buildtrail.models.rebuild import RebuildRequest, RebuildState
from buildtrail.models.versions import (
    ArtifactStatus,
    Classification,
    RemoteVersion,
    ScanReport,
)


# ---------------------------------------------------------------------------
# Classification -> Rich style mapping
# ---------------------------------------------------------------------------

_CLASS_STYLES: dict[Classification, str] = {
    Classification.IN_SYNC: "green",
    Classification.OUTDATED: "yellow",
    Classification.DRIFTED: "red",
    Classification.MISSING: "bold red",
    Classification.UNRESOLVED: "magenta",
}

_OPERATION_STYLES: dict[ActionOperation, str] = {
    ActionOperation.UPDATE: "green",
    ActionOperation.ROLLBACK: "yellow",
    ActionOperation.REBUILD_TRIGGER: "cyan",
}

_REBUILD_STYLES: dict[RebuildState, str] = {
    RebuildState.SUCCEEDED: "bold green",
    RebuildState.FAILED: "bold red",
    RebuildState.TIMED_OUT: "bold yellow",
}


def _short(value: str | None, width: int = 8) -> str:
    return value[:width] if value else "-"


def classification_markup(classification: Classification) -> str:
    style = _CLASS_STYLES.get(classification, "")
    return f"[{style}]{classification.value}[/{style}]"


class Renderer:
    """Builds Rich renderables for the ``buildtrail`` commands.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def render_entries(self, entries: list[ArtifactEntry]) -> Table:
        """Tracked artifacts with their mapping and installed version."""
        table = Table(title="Tracked Artifacts", header_style="bold cyan")
        table.add_column("Name", style="cyan")
        table.add_column("Path")
        table.add_column("Project")
        table.add_column("Branch")
        table.add_column("Job")
        table.add_column("Installed", justify="center")

        for entry in entries:
            ref = entry.repo_ref
            table.add_row(
                entry.name,
                str(entry.local_path),
                ref.project if ref else "[magenta]unmapped[/magenta]",
                ref.branch if ref else "-",
                ref.job_name if ref else "-",
                _short(entry.current_version),
            )
        return table

    # ------------------------------------------------------------------
    # Scan / status
    # ------------------------------------------------------------------

    def render_scan(self, report: ScanReport) -> Group:
        """One row per artifact plus any per-artifact scan errors."""
        table = Table(title="Artifact Scan", header_style="bold cyan", expand=True)
        table.add_column("Name", style="cyan")
        table.add_column("State", justify="center")
        table.add_column("Installed", justify="center")
        table.add_column("Newer", justify="right")
        table.add_column("Details")

        for name, status in report.statuses.items():
            table.add_row(
                name,
                classification_markup(status.classification),
                _short(status.entry.current_version),
                str(len(status.changes_since)) if status.changes_since else "[dim]0[/dim]",
                escape(status.diagnostic) if status.diagnostic else "[dim]-[/dim]",
            )
        for name, error in report.errors.items():
            table.add_row(name, "[bold red]error[/bold red]", "-", "-", f"[red]{escape(error)}[/red]")

        in_sync = sum(
            1 for c in report.classifications.values() if c is Classification.IN_SYNC
        )
        summary = (
            f"[bold]Artifacts:[/bold] {len(report.classifications) + len(report.errors)}"
            f"  |  [bold]In sync:[/bold] {in_sync}"
            f"  |  [bold]Errors:[/bold] {len(report.errors)}"
        )
        return Group(table, Text.from_markup(summary))

    def render_status(self, status: ArtifactStatus) -> Panel:
        """Detailed status of one artifact, listing newer builds if any."""
        entry = status.entry
        lines = [
            f"[bold]State:[/bold] {classification_markup(status.classification)}",
            f"[bold]Path:[/bold] {entry.local_path}",
            f"[bold]Installed:[/bold] {entry.current_version or '-'}",
            f"[bold]Local sha256:[/bold] {status.local_hash or '-'}",
            f"[bold]Expected sha256:[/bold] {status.expected_hash or '-'}",
        ]
        if status.diagnostic:
            lines.append(f"[dim]{escape(status.diagnostic)}[/dim]")
        parts: list = [Text.from_markup("\n".join(lines))]
        if status.changes_since:
            parts.append(Text(""))
            parts.append(self.render_timeline(status.changes_since, title="Newer builds"))

        style = _CLASS_STYLES.get(status.classification, "blue")
        return Panel(Group(*parts), title=f"[bold]{entry.name}[/bold]", border_style=style)

    # ------------------------------------------------------------------
    # Remote history
    # ------------------------------------------------------------------

    def render_timeline(
        self,
        timeline: list[RemoteVersion],
        *,
        installed: str | None = None,
        title: str = "Build History",
    ) -> Table:
        """Newest-first builds; expired artifacts are marked."""
        table = Table(title=title, header_style="bold cyan", expand=True)
        table.add_column("Commit", style="cyan", no_wrap=True)
        table.add_column("Date", no_wrap=True)
        table.add_column("Author")
        table.add_column("Message")

        for version in timeline:
            commit = version.short_id
            if version.version_id == installed:
                commit = f"[bold green]{commit} *[/bold green]"
            message = escape(version.message)
            if not version.artifact_available:
                message = f"{message} [dim](expired)[/dim]"
            table.add_row(
                commit,
                version.commit_timestamp.strftime("%Y-%m-%d %H:%M"),
                escape(version.author),
                message,
            )
        return table

    # ------------------------------------------------------------------
    # Action log
    # ------------------------------------------------------------------

    def render_history(
        self, name: str, entries: list[ActionLogEntry], *, chain_valid: bool | None = None
    ) -> Group:
        """The action log of one artifact, oldest first."""
        table = Table(title=f"Action Log: {name}", header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", justify="right")
        table.add_column("Time (UTC)", no_wrap=True)
        table.add_column("Operation")
        table.add_column("From", justify="center")
        table.add_column("To", justify="center")
        table.add_column("Actor")

        for i, entry in enumerate(entries, start=1):
            style = _OPERATION_STYLES.get(entry.operation, "")
            table.add_row(
                str(i),
                entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                f"[{style}]{entry.operation.value}[/{style}]",
                _short(entry.from_version),
                _short(entry.to_version),
                entry.actor or "-",
            )

        parts: list = [table]
        if chain_valid is not None:
            chain = "[green]valid[/green]" if chain_valid else "[bold red]BROKEN[/bold red]"
            parts.append(Text.from_markup(f"[bold]Chain:[/bold] {chain}"))
        return Group(*parts)

    # ------------------------------------------------------------------
    # Results of mutations
    # ------------------------------------------------------------------

    def render_action(self, entry: ActionLogEntry) -> Text:
        style = _OPERATION_STYLES.get(entry.operation, "")
        return Text.from_markup(
            f"[bold]{entry.artifact_name}[/bold] [{style}]{entry.describe()}[/{style}]"
            f" [dim](sha256 {_short(entry.to_hash, 12)})[/dim]"
        )

    def render_rebuild(self, request: RebuildRequest) -> Text:
        style = _REBUILD_STYLES.get(request.state, "")
        line = (
            f"[bold]{request.artifact_name}[/bold] rebuild of "
            f"{_short(request.target_version)}: [{style}]{request.state.value}[/{style}]"
            f" after {request.attempts} poll(s)"
        )
        if request.handle is not None and request.handle.web_url:
            line += f" [dim]{request.handle.web_url}[/dim]"
        return Text.from_markup(line)
