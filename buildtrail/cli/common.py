"""Shared plumbing for the CLI commands: console, settings, error reporting."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from buildtrail.config import Settings
from buildtrail.core.errors import BuildtrailError
from buildtrail.core.registry import Registry
from buildtrail.monitor.renderer import Renderer

console = Console()
renderer = Renderer(console=console)


def load_settings() -> Settings:
    """Settings read fresh from the environment for this invocation."""
    return Settings()


def configure_logging(level: str, *, rich_tracebacks: bool = False) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                show_path=False,
                rich_tracebacks=rich_tracebacks,
            )
        ],
        force=True,
    )


@contextmanager
def reporting_errors() -> Iterator[None]:
    """Turn any ``BuildtrailError`` into a red message and exit code 1."""
    try:
        yield
    except BuildtrailError as exc:
        console.print(f"[bold red]{type(exc).__name__}:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc


@contextmanager
def open_registry(settings: Settings | None = None) -> Iterator[Registry]:
    """A Registry built from the tracking file, closed on exit."""
    with reporting_errors():
        registry = Registry.from_settings(settings or load_settings())
        with registry:
            yield registry
