"""Version Resolver: remote build timelines and artifact classification.

The timeline is rebuilt from the provider on every call; nothing is cached,
since remote history can be rewritten (force-push, retention expiry) at any
time.

``classify`` is a pure function of its inputs.  ``VersionResolver.status``
gathers those inputs (timeline, on-disk digest, remote digest) and calls it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from buildtrail.core.errors import ConfigurationError, VersionNotFoundError
from buildtrail.core.hasher import hash_file
from buildtrail.models.artifacts import ArtifactEntry, RepoRef
from buildtrail.models.versions import ArtifactStatus, Classification, RemoteVersion
from buildtrail.providers.base import CIProvider

logger = logging.getLogger(__name__)


def order_timeline(versions: list[RemoteVersion]) -> list[RemoteVersion]:
    """Collapse builds to one per commit and sort newest-first.

    Ordering is by commit timestamp, then pipeline id.  When a commit was
    built more than once, the newest build that still has its artifact wins,
    otherwise the newest build.
    """
    def build_key(v: RemoteVersion) -> tuple:
        return (v.commit_timestamp, v.pipeline_id or 0, v.job_id or 0)

    per_commit: dict[str, RemoteVersion] = {}
    for version in versions:
        chosen = per_commit.get(version.version_id)
        if chosen is None:
            per_commit[version.version_id] = version
            continue
        rank_new = (version.artifact_available, build_key(version))
        rank_old = (chosen.artifact_available, build_key(chosen))
        if rank_new > rank_old:
            per_commit[version.version_id] = version
    return sorted(per_commit.values(), key=build_key, reverse=True)


def find_version(timeline: list[RemoteVersion], version_id: str) -> RemoteVersion:
    """Return the timeline entry for ``version_id``.

    A full commit SHA or a unique prefix is accepted.

    Raises
    ------
    VersionNotFoundError
        If no (or more than one) version matches.
    """
    matches = [v for v in timeline if v.version_id.startswith(version_id)]
    exact = [v for v in matches if v.version_id == version_id]
    if exact:
        return exact[0]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise VersionNotFoundError(f"Version {version_id!r} is not in the build history")
    raise VersionNotFoundError(f"Version prefix {version_id!r} is ambiguous")


def changes_since(
    entry: ArtifactEntry, timeline: list[RemoteVersion]
) -> list[RemoteVersion]:
    """Versions strictly newer than ``entry.current_version``, newest-first.

    The whole timeline is returned when nothing is installed yet.
    """
    if entry.current_version is None:
        return list(timeline)
    for index, version in enumerate(timeline):
        if version.version_id == entry.current_version:
            return timeline[:index]
    raise VersionNotFoundError(
        f"{entry.name}: installed version {entry.current_version!r} "
        "no longer appears in the build history"
    )


def classify(
    entry: ArtifactEntry,
    timeline: list[RemoteVersion],
    *,
    local_hash: str | None,
    remote_hash: str | None = None,
) -> tuple[Classification, str]:
    """Classify an artifact against its ordered timeline.

    Parameters
    ----------
    entry:
        The tracked artifact.
    timeline:
        Newest-first timeline from ``order_timeline``.
    local_hash:
        Digest of the file on disk, ``None`` when the file is absent.
    remote_hash:
        Provider digest of the installed version, if known.

    Returns
    -------
    tuple[Classification, str]
        The classification and a diagnostic (empty when nothing to say).
    """
    if entry.repo_ref is None:
        return Classification.UNRESOLVED, "artifact is not mapped to a repository"
    if local_hash is None:
        return Classification.MISSING, f"{entry.local_path} does not exist"
    if entry.current_version is None:
        return Classification.UNRESOLVED, "no installed version recorded; run update"
    try:
        newer = changes_since(entry, timeline)
    except VersionNotFoundError as exc:
        return Classification.UNRESOLVED, str(exc)
    if newer:
        return Classification.OUTDATED, f"{len(newer)} newer build(s) available"

    expected = remote_hash or entry.current_hash
    if expected is not None and expected != local_hash:
        return Classification.DRIFTED, (
            f"local sha256 {local_hash[:12]} differs from {expected[:12]} "
            f"recorded for {entry.current_version[:8]}"
        )
    return Classification.IN_SYNC, ""


class VersionResolver:
    """Resolves timelines through the registered CI providers.

    Parameters
    ----------
    providers:
        Provider instances keyed by source id (``RepoRef.source``).
    """

    def __init__(self, providers: Mapping[str, CIProvider]) -> None:
        self._providers = dict(providers)

    def provider_for(self, repo_ref: RepoRef) -> CIProvider:
        provider = self._providers.get(repo_ref.source)
        if provider is None:
            raise ConfigurationError(
                f"No CI provider configured for source {repo_ref.source!r}"
            )
        return provider

    # ------------------------------------------------------------------
    # Timelines
    # ------------------------------------------------------------------

    def resolve_timeline(self, repo_ref: RepoRef) -> list[RemoteVersion]:
        """Fetch and order the remote timeline for ``repo_ref``.

        Raises ``NetworkError`` if the provider call fails.
        """
        provider = self.provider_for(repo_ref)
        versions = provider.list_versions(
            repo_ref.project, repo_ref.branch, repo_ref.job_name
        )
        timeline = order_timeline(versions)
        expired = sum(1 for v in timeline if not v.artifact_available)
        logger.debug(
            "Resolved %d versions for %s@%s (%d expired)",
            len(timeline), repo_ref.project, repo_ref.branch, expired,
        )
        return timeline

    def refresh_version(self, repo_ref: RepoRef, version_id: str) -> RemoteVersion:
        """Re-resolve a single commit, e.g. after a rebuild."""
        return find_version(self.resolve_timeline(repo_ref), version_id)

    def remote_hash(self, repo_ref: RepoRef, version: RemoteVersion) -> str | None:
        """The provider digest of one version, fetched only if the listing omitted it."""
        if version.remote_hash is not None:
            return version.remote_hash
        return self.provider_for(repo_ref).artifact_digest(
            repo_ref.project, version, repo_ref.job_name
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, entry: ArtifactEntry) -> ArtifactStatus:
        """Classify ``entry`` against a freshly resolved timeline.

        No remote calls are made for unmapped artifacts.  ``NetworkError``
        propagates to the caller.
        """
        local_hash = _hash_if_present(entry.local_path)
        if entry.repo_ref is None:
            classification, diagnostic = classify(entry, [], local_hash=local_hash)
            return ArtifactStatus(
                entry=entry,
                classification=classification,
                local_hash=local_hash,
                diagnostic=diagnostic,
            )

        timeline = self.resolve_timeline(entry.repo_ref)
        remote_hash = None
        if (
            local_hash is not None
            and timeline
            and entry.current_version == timeline[0].version_id
        ):
            remote_hash = self.remote_hash(entry.repo_ref, timeline[0])

        classification, diagnostic = classify(
            entry, timeline, local_hash=local_hash, remote_hash=remote_hash
        )
        try:
            newer = changes_since(entry, timeline)
        except VersionNotFoundError:
            newer = []
        if classification is Classification.UNRESOLVED:
            logger.warning("%s is unresolved: %s", entry.name, diagnostic)

        return ArtifactStatus(
            entry=entry,
            classification=classification,
            changes_since=newer,
            local_hash=local_hash,
            expected_hash=remote_hash or entry.current_hash,
            diagnostic=diagnostic,
        )


def _hash_if_present(path: Path) -> str | None:
    if not path.is_file():
        return None
    return hash_file(path)
