"""Tests for the Version Resolver: timelines and pure classification."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from buildtrail.core.errors import ConfigurationError, NetworkError, VersionNotFoundError
from buildtrail.core.hasher import hash_bytes
from buildtrail.core.resolver import (
    VersionResolver,
    changes_since,
    classify,
    find_version,
    order_timeline,
)
from buildtrail.models.artifacts import ArtifactEntry, RepoRef
from buildtrail.models.versions import Classification, RemoteVersion

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _v(version_id: str, hours: int, *, pipeline: int = 1, job: int = 1, available: bool = True):
    return RemoteVersion(
        version_id=version_id,
        commit_timestamp=T0 + timedelta(hours=hours),
        pipeline_id=pipeline,
        job_id=job,
        artifact_available=available,
    )


TIMELINE = [_v("c3", 2), _v("c2", 1), _v("c1", 0)]


def _entry(tmp_dir: Path, version: str | None = "c3", digest: str | None = "h3") -> ArtifactEntry:
    return ArtifactEntry(
        name="agent",
        repo_ref=RepoRef(project="tools/agent", branch="main"),
        local_path=tmp_dir / "agent.jar",
        current_version=version,
        current_hash=digest,
    )


class TestOrderTimeline:
    def test_newest_first(self):
        ordered = order_timeline([_v("c1", 0), _v("c3", 2), _v("c2", 1)])
        assert [v.version_id for v in ordered] == ["c3", "c2", "c1"]

    def test_pipeline_id_breaks_ties(self):
        ordered = order_timeline([_v("a", 0, pipeline=5), _v("b", 0, pipeline=9)])
        assert [v.version_id for v in ordered] == ["b", "a"]

    def test_one_version_per_commit_prefers_available(self):
        old_ok = _v("c1", 0, pipeline=1, job=10)
        new_expired = _v("c1", 0, pipeline=2, job=20, available=False)
        ordered = order_timeline([old_ok, new_expired])
        assert ordered == [old_ok]

    def test_one_version_per_commit_newest_build_when_all_expired(self):
        a = _v("c1", 0, pipeline=1, job=10, available=False)
        b = _v("c1", 0, pipeline=2, job=20, available=False)
        assert order_timeline([a, b]) == [b]

    def test_expired_builds_stay_visible(self):
        ordered = order_timeline([_v("c1", 0, available=False)])
        assert ordered[0].artifact_available is False


class TestFindVersion:
    def test_exact(self):
        assert find_version(TIMELINE, "c2").version_id == "c2"

    def test_unique_prefix(self):
        timeline = [_v("abcdef12", 1), _v("98765432", 0)]
        assert find_version(timeline, "abc").version_id == "abcdef12"

    def test_ambiguous_prefix(self):
        timeline = [_v("abc1", 1), _v("abc2", 0)]
        with pytest.raises(VersionNotFoundError, match="ambiguous"):
            find_version(timeline, "abc")

    def test_unknown(self):
        with pytest.raises(VersionNotFoundError):
            find_version(TIMELINE, "zz")


class TestChangesSince:
    def test_strictly_newer(self, tmp_dir: Path):
        newer = changes_since(_entry(tmp_dir, "c2"), TIMELINE)
        assert [v.version_id for v in newer] == ["c3"]

    def test_newest_installed(self, tmp_dir: Path):
        assert changes_since(_entry(tmp_dir, "c3"), TIMELINE) == []

    def test_nothing_installed_returns_all(self, tmp_dir: Path):
        assert changes_since(_entry(tmp_dir, None), TIMELINE) == TIMELINE

    def test_installed_version_gone(self, tmp_dir: Path):
        with pytest.raises(VersionNotFoundError):
            changes_since(_entry(tmp_dir, "c0"), TIMELINE)


class TestClassify:
    def test_in_sync(self, tmp_dir: Path):
        result, _ = classify(_entry(tmp_dir), TIMELINE, local_hash="h3")
        assert result is Classification.IN_SYNC

    def test_outdated(self, tmp_dir: Path):
        result, diagnostic = classify(_entry(tmp_dir, "c2", "h2"), TIMELINE, local_hash="h2")
        assert result is Classification.OUTDATED
        assert "1 newer" in diagnostic

    def test_drifted_against_recorded_hash(self, tmp_dir: Path):
        result, _ = classify(_entry(tmp_dir), TIMELINE, local_hash="tampered")
        assert result is Classification.DRIFTED

    def test_remote_hash_takes_precedence(self, tmp_dir: Path):
        result, _ = classify(
            _entry(tmp_dir), TIMELINE, local_hash="h3", remote_hash="provider-digest"
        )
        assert result is Classification.DRIFTED

    def test_missing_overrides_everything(self, tmp_dir: Path):
        result, _ = classify(_entry(tmp_dir, "c1"), TIMELINE, local_hash=None)
        assert result is Classification.MISSING

    def test_unmapped_is_unresolved(self, tmp_dir: Path):
        entry = _entry(tmp_dir).model_copy(update={"repo_ref": None})
        result, _ = classify(entry, [], local_hash="h3")
        assert result is Classification.UNRESOLVED

    def test_no_recorded_version_is_unresolved(self, tmp_dir: Path):
        result, diagnostic = classify(_entry(tmp_dir, None, None), TIMELINE, local_hash="x")
        assert result is Classification.UNRESOLVED
        assert diagnostic

    def test_version_absent_from_history_is_unresolved(self, tmp_dir: Path):
        result, diagnostic = classify(_entry(tmp_dir, "c0"), TIMELINE, local_hash="h3")
        assert result is Classification.UNRESOLVED
        assert "c0" in diagnostic

    def test_pure(self, tmp_dir: Path):
        entry = _entry(tmp_dir, "c2", "h2")
        first = classify(entry, TIMELINE, local_hash="h2")
        second = classify(entry, TIMELINE, local_hash="h2")
        assert first == second


class TestVersionResolver:
    def test_unknown_source(self, tmp_dir: Path):
        resolver = VersionResolver({})
        with pytest.raises(ConfigurationError):
            resolver.resolve_timeline(RepoRef(project="p", branch="main"))

    def test_resolve_timeline_ordered(self, provider):
        resolver = VersionResolver({"gitlab": provider})
        timeline = resolver.resolve_timeline(RepoRef(project="tools/agent", branch="main"))
        assert [v.version_id for v in timeline] == ["c3", "c2", "c1"]

    def test_status_never_caches(self, provider, agent_entry):
        resolver = VersionResolver({"gitlab": provider})
        resolver.status(agent_entry)
        resolver.status(agent_entry)
        assert provider.count("list_versions") == 2

    def test_status_unmapped_makes_no_remote_calls(self, provider, tmp_dir: Path):
        resolver = VersionResolver({"gitlab": provider})
        entry = ArtifactEntry(name="loose", local_path=tmp_dir / "loose.bin")
        status = resolver.status(entry)
        assert status.classification is Classification.UNRESOLVED
        assert provider.calls == []

    def test_status_missing_file(self, provider, agent_entry):
        resolver = VersionResolver({"gitlab": provider})
        entry = agent_entry.model_copy(update={"current_version": "c3", "current_hash": "x"})
        assert resolver.status(entry).classification is Classification.MISSING

    def test_status_fetches_digest_for_newest_only(self, provider, agent_entry):
        data = provider.contents["c3"]
        agent_entry.local_path.parent.mkdir(parents=True)
        agent_entry.local_path.write_bytes(data)
        provider.digests["c3"] = hash_bytes(data)
        resolver = VersionResolver({"gitlab": provider})
        entry = agent_entry.model_copy(
            update={"current_version": "c3", "current_hash": hash_bytes(data)}
        )
        status = resolver.status(entry)
        assert status.classification is Classification.IN_SYNC
        assert provider.count("artifact_digest") == 1

    def test_status_outdated_lists_changes(self, provider, agent_entry):
        agent_entry.local_path.parent.mkdir(parents=True)
        agent_entry.local_path.write_bytes(provider.contents["c2"])
        entry = agent_entry.model_copy(
            update={"current_version": "c2", "current_hash": hash_bytes(provider.contents["c2"])}
        )
        status = VersionResolver({"gitlab": provider}).status(entry)
        assert status.classification is Classification.OUTDATED
        assert [v.version_id for v in status.changes_since] == ["c3"]
        assert provider.count("artifact_digest") == 0

    def test_network_error_propagates(self, provider, agent_entry):
        provider.network_down = True
        with pytest.raises(NetworkError):
            VersionResolver({"gitlab": provider}).status(agent_entry)
