"""CI provider adapter protocol.

The core talks to CI systems only through ``CIProvider``.  Any object with
these methods satisfies the protocol; ``GitLabProvider`` is the bundled
implementation.

Adapters raise ``NetworkError`` when the provider cannot be reached or
answers with an error, and ``ArtifactExpiredError`` when a build's artifact
is no longer retained.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from buildtrail.models.rebuild import PipelineHandle, PipelineStatus
from buildtrail.models.versions import RemoteVersion


@runtime_checkable
class CIProvider(Protocol):
    """Protocol for CI provider backends."""

    def list_branches(self, project: str) -> list[str]:
        """Return the branch names of ``project``."""
        ...

    def list_versions(
        self, project: str, branch: str, job_name: str
    ) -> list[RemoteVersion]:
        """Return the builds of ``job_name`` on ``branch``, in any order.

        ``remote_hash`` may be ``None`` when the provider exposes no checksum.
        """
        ...

    def download_artifact(
        self,
        project: str,
        version: RemoteVersion,
        job_name: str,
        dest_path: Path,
        *,
        artifact_pattern: str | None = None,
    ) -> None:
        """Write the artifact built for ``version`` to ``dest_path``."""
        ...

    def trigger_rebuild(self, project: str, version: RemoteVersion) -> PipelineHandle:
        """Re-run the pipeline that built ``version``."""
        ...

    def poll_status(self, handle: PipelineHandle) -> PipelineStatus:
        """Report whether a triggered rebuild is running, succeeded or failed."""
        ...

    def artifact_digest(
        self, project: str, version: RemoteVersion, job_name: str
    ) -> str | None:
        """Fetch the provider-side digest of one build on demand, if known."""
        ...
