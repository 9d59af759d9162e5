"""Buildtrail: keep locally installed CI build artifacts in step with their repositories.

  - Content-hashed artifacts classified against their remote build history
    (in-sync, drifted, outdated, missing, unresolved)
  - Atomic, per-artifact-locked updates and rollbacks
  - Append-only, hash-chained SQLite action log; state is its replay
  - Rebuild polling for builds whose artifacts expired upstream
  - GitLab adapter over httpx; typer + rich CLI
"""

__version__ = "0.1.0"
__description__ = (
    "Artifact version resolution and synchronization against CI build history"
)

from buildtrail.core.registry import Registry
from buildtrail.cli.app import app as cli

__all__ = ["Registry", "cli", "__version__"]
