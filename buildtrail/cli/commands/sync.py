"""``buildtrail update|rollback|rebuild|recover``: move artifacts between versions.

Each command holds the artifact's lock for its whole run; a second command
on the same artifact fails immediately instead of waiting.  Ctrl+C cancels a
sync cleanly as long as the file has not been replaced yet.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import TypeVar

import typer
from rich.markup import escape

from buildtrail.cli.common import console, open_registry, renderer
from buildtrail.models.action_log import ActionLogEntry

T = TypeVar("T")


def _cancellable(operation: Callable[[threading.Event], T]) -> T:
    """Run ``operation`` in a worker thread so Ctrl+C can set its cancel event."""
    cancel = threading.Event()
    result: dict[str, object] = {}

    def target() -> None:
        try:
            result["value"] = operation(cancel)
        except BaseException as exc:  # re-raised in the calling thread
            result["error"] = exc

    worker = threading.Thread(target=target, name="buildtrail-sync")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelling...[/yellow]")
        cancel.set()
        worker.join()
    if "error" in result:
        raise result["error"]  # type: ignore[misc]
    return result["value"]  # type: ignore[return-value]


def update_cmd(
    name: str = typer.Argument(..., help="Name of the artifact."),
    version: str = typer.Option(
        None, "--version", help="Commit SHA (or unique prefix); newest by default."
    ),
) -> None:
    """Install the newest (or a given) build of an artifact."""
    with open_registry() as registry:
        entry = _cancellable(lambda cancel: registry.update(name, version, cancel=cancel))
    _print_action(name, entry)


def rollback_cmd(
    name: str = typer.Argument(..., help="Name of the artifact."),
    steps: int = typer.Option(
        1, "--steps", "-n", help="How many recorded changes to step back over."
    ),
) -> None:
    """Return an artifact to the version it had before a recorded change."""
    with open_registry() as registry:
        entry = _cancellable(lambda cancel: registry.rollback(name, steps, cancel=cancel))
    _print_action(name, entry)


def rebuild_cmd(
    name: str = typer.Argument(..., help="Name of the artifact."),
    version: str = typer.Argument(..., help="Commit SHA (or unique prefix) to rebuild."),
) -> None:
    """Re-run the build of a version whose artifact expired, without installing it."""
    with open_registry() as registry:
        request = _cancellable(lambda cancel: registry.rebuild(name, version, cancel=cancel))
    console.print(renderer.render_rebuild(request))


def recover_cmd(
    name: str = typer.Argument(None, help="Name of the artifact; every idle one by default."),
) -> None:
    """Remove leftovers of interrupted updates, restoring unlogged installs."""
    with open_registry() as registry:
        report = registry.recover(name)
    if not report:
        console.print("[dim]Nothing to recover.[/dim]")
        return
    for artifact_name, actions in report.items():
        for action in actions:
            console.print(f"[bold]{escape(artifact_name)}[/bold] {escape(action)}")


def _print_action(name: str, entry: ActionLogEntry | None) -> None:
    if entry is None:
        console.print(f"[bold]{escape(name)}[/bold] is already up to date")
        return
    console.print(renderer.render_action(entry))
