"""Buildtrail data models: all Pydantic v2, frozen unless they track progress."""

from buildtrail.models.action_log import ActionLogEntry, ActionOperation
from buildtrail.models.artifacts import ArtifactEntry, ProviderKind, RepoRef
from buildtrail.models.config import ArtifactConfig, SourceConfig, TrackingConfig
from buildtrail.models.rebuild import (
    VALID_TRANSITIONS,
    PipelineHandle,
    PipelineStatus,
    RebuildPolicy,
    RebuildRequest,
    RebuildState,
)
from buildtrail.models.versions import (
    ArtifactStatus,
    Classification,
    RemoteVersion,
    ScanReport,
)

__all__ = [
    # artifacts
    "ProviderKind",
    "RepoRef",
    "ArtifactEntry",
    # versions
    "RemoteVersion",
    "Classification",
    "ArtifactStatus",
    "ScanReport",
    # action log
    "ActionOperation",
    "ActionLogEntry",
    # rebuild
    "RebuildState",
    "VALID_TRANSITIONS",
    "PipelineStatus",
    "PipelineHandle",
    "RebuildPolicy",
    "RebuildRequest",
    # config
    "SourceConfig",
    "ArtifactConfig",
    "TrackingConfig",
]
