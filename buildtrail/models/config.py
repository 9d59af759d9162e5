"""Tracking file models: configured sources and tracked artifacts.

Loaded from ``.buildtrail/artifacts.toml`` by ``buildtrail.core.tracking``.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from buildtrail.models.artifacts import ArtifactEntry, ProviderKind, RepoRef


class SourceConfig(BaseModel):
    """A CI server artifacts are fetched from."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: ProviderKind = ProviderKind.GITLAB
    url: str = "https://gitlab.com/"
    token_env: str | None = None  # name of the env var holding the API token

    def resolve_token(self, fallback: str = "") -> str:
        """Token from ``token_env`` if set in the environment, else ``fallback``."""
        if self.token_env:
            return os.environ.get(self.token_env, fallback)
        return fallback


class ArtifactConfig(BaseModel):
    """One ``[[artifacts]]`` table of the tracking file."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: Path
    source: str | None = None
    project: str | None = None
    branch: str = "main"
    job: str = "build"
    pattern: str | None = None

    def to_repo_ref(self, sources: dict[str, SourceConfig]) -> RepoRef | None:
        if self.source is None or self.project is None:
            return None
        source = sources.get(self.source)
        kind = source.kind if source is not None else ProviderKind.GITLAB
        return RepoRef(
            provider=kind,
            source=self.source,
            project=self.project,
            branch=self.branch,
            job_name=self.job,
            artifact_pattern=self.pattern,
        )

    @classmethod
    def from_entry(cls, entry: ArtifactEntry) -> ArtifactConfig:
        ref = entry.repo_ref
        if ref is None:
            return cls(name=entry.name, path=entry.local_path)
        return cls(
            name=entry.name,
            path=entry.local_path,
            source=ref.source,
            project=ref.project,
            branch=ref.branch,
            job=ref.job_name,
            pattern=ref.artifact_pattern,
        )


class TrackingConfig(BaseModel):
    """The whole tracking file: sources plus tracked artifacts."""

    model_config = ConfigDict(frozen=True)

    sources: list[SourceConfig] = Field(default_factory=list)
    artifacts: list[ArtifactConfig] = Field(default_factory=list)

    def source_map(self) -> dict[str, SourceConfig]:
        return {s.id: s for s in self.sources}

    def to_entries(self) -> list[ArtifactEntry]:
        """Build the (version-less) entries; versions come from the action log."""
        sources = self.source_map()
        return [
            ArtifactEntry(
                name=a.name,
                repo_ref=a.to_repo_ref(sources),
                local_path=a.path,
            )
            for a in self.artifacts
        ]

    def with_artifact(self, artifact: ArtifactConfig) -> TrackingConfig:
        """Return a copy with ``artifact`` added or replacing the same name."""
        kept = [a for a in self.artifacts if a.name != artifact.name]
        return self.model_copy(update={"artifacts": [*kept, artifact]})

    def without_artifact(self, name: str) -> TrackingConfig:
        kept = [a for a in self.artifacts if a.name != name]
        return self.model_copy(update={"artifacts": kept})
