"""Error taxonomy shared by the resolver, controller, rebuild flow and registry.

Scan-time errors are collected per artifact by the Registry.  Errors raised
by mutating operations abort that single operation with no on-disk change
and no action log entry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from buildtrail.models.rebuild import RebuildRequest


class BuildtrailError(RuntimeError):
    """Base class for every error raised by buildtrail."""


class NetworkError(BuildtrailError):
    """A CI provider call failed (transport error or HTTP error status)."""


class HashMismatchError(BuildtrailError):
    """Downloaded content does not match the expected digest."""

    def __init__(self, artifact_name: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Integrity check failed for {artifact_name}: "
            f"expected sha256={expected}, got sha256={actual}"
        )
        self.artifact_name = artifact_name
        self.expected = expected
        self.actual = actual


class VersionNotFoundError(BuildtrailError):
    """A version is absent from remote history, or the log is not deep enough."""


class ArtifactExpiredError(BuildtrailError):
    """The provider no longer retains the artifact for a version."""


class LockConflictError(BuildtrailError):
    """Another mutating operation already holds the artifact's lock."""


class ConfigurationError(BuildtrailError):
    """An artifact is not mapped to a repository, or a source is misconfigured."""


class SyncCancelledError(BuildtrailError):
    """A sync was cancelled before the local file was replaced."""


class ActionLogIntegrityError(BuildtrailError):
    """The action log hash chain for an artifact is broken."""


class InvalidTransitionError(BuildtrailError):
    """A rebuild request was moved along an edge the state table forbids."""


class RebuildError(BuildtrailError):
    """Terminal, unsuccessful Rebuild Flow outcome.

    The terminal ``RebuildRequest`` is attached as ``request``.
    """

    def __init__(self, message: str, request: RebuildRequest) -> None:
        super().__init__(message)
        self.request = request


class RebuildFailedError(RebuildError):
    """The rebuild could not be triggered, or the pipeline failed."""


class RebuildTimeoutError(RebuildError):
    """The pipeline was still running when the polling budget ran out."""
