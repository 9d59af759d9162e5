"""Buildtrail CLI: Typer-based command-line interface.

Provides the ``buildtrail`` command with subcommands for tracking
artifacts, inspecting their state and history, and updating, rolling back
or rebuilding them.

All output uses Rich for formatted terminal display.
"""
