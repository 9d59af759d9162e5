"""Shared test fixtures for Buildtrail."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from buildtrail.core.action_log import ActionLog
from buildtrail.core.errors import ArtifactExpiredError, NetworkError
from buildtrail.core.hasher import hash_bytes
from buildtrail.core.registry import Registry
from buildtrail.models.artifacts import ArtifactEntry, RepoRef
from buildtrail.models.rebuild import PipelineHandle, PipelineStatus, RebuildPolicy
from buildtrail.models.versions import RemoteVersion

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
AGENT_PROJECT = "tools/agent"


class FakeProvider:
    """In-memory ``CIProvider`` with scriptable expiry, rebuilds and failures."""

    def __init__(self) -> None:
        self.builds: list[tuple[str, str, str, RemoteVersion]] = []
        self.contents: dict[str, bytes] = {}
        self.rebuilt_contents: dict[str, bytes] = {}
        self.digests: dict[str, str] = {}
        self.expired_on_download: set[str] = set()
        self.rebuild_statuses: list[PipelineStatus] = [PipelineStatus.SUCCEEDED]
        self.trigger_error: Exception | None = None
        self.network_down = False
        self.calls: list[tuple[str, Any]] = []
        self._next_job = 1000
        self._polls = 0

    # -- scripting -------------------------------------------------------

    def add_build(
        self,
        version_id: str,
        content: bytes,
        *,
        hours: int = 0,
        project: str = AGENT_PROJECT,
        branch: str = "main",
        job: str = "build",
        available: bool = True,
        message: str = "",
        author: str = "dev",
    ) -> RemoteVersion:
        self._next_job += 1
        version = RemoteVersion(
            version_id=version_id,
            commit_timestamp=BASE_TIME + timedelta(hours=hours),
            author=author,
            message=message or f"commit {version_id}",
            branch=branch,
            artifact_available=available,
            pipeline_id=self._next_job,
            job_id=self._next_job,
        )
        self.builds.append((project, branch, job, version))
        self.contents[version_id] = content
        return version

    def expire(self, version_id: str) -> None:
        self.builds = [
            (p, b, j, v.model_copy(update={"artifact_available": False}))
            if v.version_id == version_id
            else (p, b, j, v)
            for p, b, j, v in self.builds
        ]

    # -- CIProvider --------------------------------------------------------

    def list_branches(self, project: str) -> list[str]:
        self.calls.append(("list_branches", project))
        return sorted({b for p, b, _, _ in self.builds if p == project})

    def list_versions(self, project: str, branch: str, job_name: str) -> list[RemoteVersion]:
        self.calls.append(("list_versions", project))
        if self.network_down:
            raise NetworkError("provider unreachable")
        return [
            v for p, b, j, v in self.builds
            if p == project and b == branch and j == job_name
        ]

    def download_artifact(
        self,
        project: str,
        version: RemoteVersion,
        job_name: str,
        dest_path: Path,
        *,
        artifact_pattern: str | None = None,
    ) -> None:
        self.calls.append(("download_artifact", version.version_id))
        if self.network_down:
            raise NetworkError("provider unreachable")
        if version.version_id in self.expired_on_download or not version.artifact_available:
            raise ArtifactExpiredError(f"artifact of {version.version_id} expired")
        Path(dest_path).write_bytes(self.contents[version.version_id])

    def trigger_rebuild(self, project: str, version: RemoteVersion) -> PipelineHandle:
        self.calls.append(("trigger_rebuild", version.version_id))
        if self.trigger_error is not None:
            raise self.trigger_error
        self._next_job += 1
        self._polls = 0
        return PipelineHandle(
            project=project, version_id=version.version_id, job_id=self._next_job
        )

    def poll_status(self, handle: PipelineHandle) -> PipelineStatus:
        self.calls.append(("poll_status", handle.job_id))
        index = min(self._polls, len(self.rebuild_statuses) - 1)
        status = self.rebuild_statuses[index]
        self._polls += 1
        if status is PipelineStatus.SUCCEEDED:
            self._complete_rebuild(handle)
        return status

    def artifact_digest(
        self, project: str, version: RemoteVersion, job_name: str
    ) -> str | None:
        self.calls.append(("artifact_digest", version.version_id))
        return self.digests.get(version.version_id)

    def _complete_rebuild(self, handle: PipelineHandle) -> None:
        version_id = handle.version_id
        self.expired_on_download.discard(version_id)
        if version_id in self.rebuilt_contents:
            self.contents[version_id] = self.rebuilt_contents[version_id]
        self.builds = [
            (p, b, j, v.model_copy(update={"artifact_available": True, "job_id": handle.job_id}))
            if v.version_id == version_id
            else (p, b, j, v)
            for p, b, j, v in self.builds
        ]

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)


def content_of(version_id: str) -> bytes:
    return f"agent build {version_id}\n".encode()


def digest_of(version_id: str) -> str:
    return hash_bytes(content_of(version_id))


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def action_log(tmp_dir: Path) -> ActionLog:
    """Provide a fresh ActionLog backed by a temp SQLite database."""
    return ActionLog(tmp_dir / "actions.db")


@pytest.fixture
def provider() -> FakeProvider:
    """A provider with builds c1, c2, c3 of the agent on main, oldest first."""
    fake = FakeProvider()
    for hours, version_id in enumerate(["c1", "c2", "c3"]):
        fake.add_build(version_id, content_of(version_id), hours=hours)
    return fake


@pytest.fixture
def agent_entry(tmp_dir: Path) -> ArtifactEntry:
    """The agent artifact, mapped but not yet installed."""
    return ArtifactEntry(
        name="agent",
        repo_ref=RepoRef(project=AGENT_PROJECT, branch="main"),
        local_path=tmp_dir / "bin" / "agent.jar",
    )


@pytest.fixture
def fast_policy() -> RebuildPolicy:
    """A rebuild policy that never waits."""
    return RebuildPolicy(initial_delay=0.0, max_delay=0.0, budget_seconds=60.0, max_polls=5)


@pytest.fixture
def make_registry(
    provider: FakeProvider, action_log: ActionLog, fast_policy: RebuildPolicy
) -> Callable[..., Registry]:
    """Factory for a Registry wired to the fake provider and temp action log."""

    def _make(entries: list[ArtifactEntry] | None = None, **kwargs: Any) -> Registry:
        kwargs.setdefault("policy", fast_policy)
        kwargs.setdefault("sleep", lambda seconds: None)
        kwargs.setdefault("actor", "tester")
        return Registry({"gitlab": provider}, action_log, entries, **kwargs)

    return _make


@pytest.fixture
def registry(make_registry: Callable[..., Registry], agent_entry: ArtifactEntry) -> Registry:
    """A Registry tracking only the agent artifact."""
    return make_registry([agent_entry])
