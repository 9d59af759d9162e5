"""Buildtrail CLI subcommands."""
