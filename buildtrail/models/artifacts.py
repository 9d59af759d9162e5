"""Tracked artifact models: where an artifact comes from and what is installed."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProviderKind(str, Enum):
    """CI systems an artifact can be built by."""

    GITLAB = "gitlab"


class RepoRef(BaseModel):
    """Identifies the project, branch and job that produce an artifact."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderKind = ProviderKind.GITLAB
    source: str = ""  # configured source id; defaults to the provider kind
    project: str
    branch: str
    job_name: str = "build"
    artifact_pattern: str | None = None  # suffix of the file inside the job archive

    @model_validator(mode="before")
    @classmethod
    def _default_source(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("source"):
            provider = data.get("provider", ProviderKind.GITLAB)
            data = {**data, "source": ProviderKind(provider).value}
        return data


class ArtifactEntry(BaseModel):
    """A tracked artifact on this host.

    Entries are frozen; the Registry swaps in a new entry via
    ``model_copy(update=...)`` whenever the installed version changes.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    repo_ref: RepoRef | None = None
    local_path: Path
    current_version: str | None = None
    current_hash: str | None = None
    last_scanned: datetime | None = None

    @property
    def is_mapped(self) -> bool:
        """Whether the artifact is tied to a repository at all."""
        return self.repo_ref is not None
