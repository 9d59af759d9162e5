"""Remote build timeline and derived classification models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from buildtrail.models.artifacts import ArtifactEntry


class RemoteVersion(BaseModel):
    """One build of an artifact in a repository's history.

    ``version_id`` is the commit SHA.  ``pipeline_id`` and ``job_id`` locate
    the exact build on the provider.
    """

    model_config = ConfigDict(frozen=True)

    version_id: str
    commit_timestamp: datetime
    author: str = ""
    message: str = ""
    branch: str = ""
    artifact_available: bool = True
    remote_hash: str | None = None
    pipeline_id: int | None = None
    job_id: int | None = None
    web_url: str = ""

    @property
    def short_id(self) -> str:
        return self.version_id[:8]


class Classification(str, Enum):
    """How a local artifact relates to its remote timeline."""

    IN_SYNC = "in-sync"
    DRIFTED = "drifted"
    OUTDATED = "outdated"
    MISSING = "missing"
    UNRESOLVED = "unresolved"


class ArtifactStatus(BaseModel):
    """Point-in-time status of one artifact, as reported by ``Registry.status``."""

    model_config = ConfigDict(frozen=True)

    entry: ArtifactEntry
    classification: Classification
    changes_since: list[RemoteVersion] = []
    local_hash: str | None = None
    expected_hash: str | None = None
    diagnostic: str = ""


class ScanReport(BaseModel):
    """Best-effort result of scanning every tracked artifact."""

    model_config = ConfigDict(frozen=True)

    classifications: dict[str, Classification] = Field(default_factory=dict)
    statuses: dict[str, ArtifactStatus] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors
