"""Tests for the GitLab adapter, driven through httpx.MockTransport."""

from __future__ import annotations

import io
import json
import zipfile
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from buildtrail.core.errors import ArtifactExpiredError, NetworkError, VersionNotFoundError
from buildtrail.models.rebuild import PipelineHandle, PipelineStatus
from buildtrail.models.versions import RemoteVersion
from buildtrail.providers.base import CIProvider
from buildtrail.providers.gitlab import GitLabProvider, map_job_status

Handler = Callable[[httpx.Request], httpx.Response]


def _job(job_id: int, sha: str, *, ref: str = "main", name: str = "build", **extra) -> dict:
    job = {
        "id": job_id,
        "name": name,
        "ref": ref,
        "status": "success",
        "web_url": f"https://gitlab.example.com/jobs/{job_id}",
        "pipeline": {"id": job_id * 10},
        "artifacts_file": {"filename": "artifacts.zip", "size": 10},
        "artifacts_expire_at": None,
        "commit": {
            "id": sha,
            "created_at": "2026-01-01T12:00:00Z",
            "author_name": "Dev",
            "title": f"commit {sha}",
        },
    }
    job.update(extra)
    return job


def _zip(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def _provider(handler: Handler, **kwargs) -> GitLabProvider:
    return GitLabProvider(
        "https://gitlab.example.com/",
        "secret-token",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _version(job_id: int | None = 7, sha: str = "c3") -> RemoteVersion:
    return RemoteVersion(
        version_id=sha,
        commit_timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
        job_id=job_id,
    )


class TestProtocol:
    def test_satisfies_ci_provider(self):
        assert isinstance(_provider(lambda r: httpx.Response(200, json=[])), CIProvider)


class TestListing:
    def test_list_branches(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"name": "main"}, {"name": "dev"}])

        assert _provider(handler).list_branches("tools/agent") == ["main", "dev"]
        assert seen[0].url.raw_path.startswith(b"/api/v4/projects/tools%2Fagent/repository/branches")
        assert seen[0].headers["PRIVATE-TOKEN"] == "secret-token"

    def test_list_versions_filters_ref_and_job(self):
        jobs = [
            _job(3, "c3"),
            _job(2, "c2", ref="dev"),
            _job(1, "c1", name="test"),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["scope[]"] == "success"
            return httpx.Response(200, json=jobs)

        versions = _provider(handler).list_versions("42", "main", "build")
        assert [v.version_id for v in versions] == ["c3"]
        version = versions[0]
        assert version.job_id == 3
        assert version.pipeline_id == 30
        assert version.author == "Dev"
        assert version.artifact_available is True
        assert version.remote_hash is None

    def test_expired_and_missing_artifacts(self):
        jobs = [
            _job(3, "c3", artifacts_expire_at="2000-01-01T00:00:00Z"),
            _job(2, "c2", artifacts_file=None),
            _job(1, "c1", artifacts_expire_at="2999-01-01T00:00:00.000Z"),
        ]
        versions = _provider(lambda r: httpx.Response(200, json=jobs)).list_versions(
            "42", "main", "build"
        )
        available = {v.version_id: v.artifact_available for v in versions}
        assert available == {"c3": False, "c2": False, "c1": True}

    def test_pagination_stops_on_short_page(self):
        pages: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page"]
            pages.append(page)
            if page == "1":
                return httpx.Response(200, json=[_job(2, "c2"), _job(1, "c1")])
            return httpx.Response(200, json=[_job(0, "c0")])

        versions = _provider(handler, per_page=2, max_pages=5).list_versions("42", "main", "build")
        assert pages == ["1", "2"]
        assert len(versions) == 3

    def test_pagination_bounded_by_max_pages(self):
        pages: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            pages.append(request.url.params["page"])
            return httpx.Response(200, json=[_job(1, "c1")])

        _provider(handler, per_page=1, max_pages=3).list_versions("42", "main", "build")
        assert pages == ["1", "2", "3"]

    def test_http_error_is_network_error(self):
        provider = _provider(lambda r: httpx.Response(401, json={"message": "401 Unauthorized"}))
        with pytest.raises(NetworkError, match="401"):
            provider.list_versions("42", "main", "build")

    def test_transport_error_is_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(NetworkError):
            _provider(handler).list_branches("42")


class TestDownload:
    def test_raw_archive(self, tmp_dir: Path):
        body = b"raw archive bytes"

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v4/projects/42/jobs/7/artifacts"
            return httpx.Response(200, content=body)

        dest = tmp_dir / "out.zip"
        _provider(handler).download_artifact("42", _version(), "build", dest)
        assert dest.read_bytes() == body

    def test_extracts_matching_member(self, tmp_dir: Path):
        archive = _zip({"target/agent.jar": b"JAR", "README.md": b"docs"})
        dest = tmp_dir / "agent.jar"
        _provider(lambda r: httpx.Response(200, content=archive)).download_artifact(
            "42", _version(), "build", dest, artifact_pattern=".jar"
        )
        assert dest.read_bytes() == b"JAR"

    def test_missing_member(self, tmp_dir: Path):
        archive = _zip({"README.md": b"docs"})
        with pytest.raises(VersionNotFoundError):
            _provider(lambda r: httpx.Response(200, content=archive)).download_artifact(
                "42", _version(), "build", tmp_dir / "x", artifact_pattern=".jar"
            )

    def test_not_a_zip(self, tmp_dir: Path):
        with pytest.raises(NetworkError):
            _provider(lambda r: httpx.Response(200, content=b"nope")).download_artifact(
                "42", _version(), "build", tmp_dir / "x", artifact_pattern=".jar"
            )

    @pytest.mark.parametrize("status", [404, 410])
    def test_gone_is_expired(self, tmp_dir: Path, status: int):
        with pytest.raises(ArtifactExpiredError):
            _provider(lambda r: httpx.Response(status)).download_artifact(
                "42", _version(), "build", tmp_dir / "x"
            )

    def test_server_error(self, tmp_dir: Path):
        with pytest.raises(NetworkError):
            _provider(lambda r: httpx.Response(500)).download_artifact(
                "42", _version(), "build", tmp_dir / "x"
            )

    def test_version_without_job(self, tmp_dir: Path):
        with pytest.raises(VersionNotFoundError):
            _provider(lambda r: httpx.Response(200)).download_artifact(
                "42", _version(job_id=None), "build", tmp_dir / "x"
            )


class TestRebuild:
    def test_trigger_retries_job(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/api/v4/projects/42/jobs/7/retry"
            return httpx.Response(201, json=_job(8, "c3", status="pending"))

        handle = _provider(handler).trigger_rebuild("42", _version())
        assert handle.job_id == 8
        assert handle.version_id == "c3"
        assert handle.pipeline_id == 80

    def test_trigger_forbidden(self):
        with pytest.raises(NetworkError):
            _provider(lambda r: httpx.Response(403)).trigger_rebuild("42", _version())

    def test_poll_status(self):
        statuses = iter(["running", "success"])

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v4/projects/42/jobs/8"
            return httpx.Response(200, content=json.dumps({"status": next(statuses)}))

        provider = _provider(handler)
        handle = PipelineHandle(project="42", version_id="c3", job_id=8)
        assert provider.poll_status(handle) is PipelineStatus.RUNNING
        assert provider.poll_status(handle) is PipelineStatus.SUCCEEDED

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("success", PipelineStatus.SUCCEEDED),
            ("failed", PipelineStatus.FAILED),
            ("canceled", PipelineStatus.FAILED),
            ("pending", PipelineStatus.RUNNING),
            ("running", PipelineStatus.RUNNING),
            ("something-new", PipelineStatus.RUNNING),
        ],
    )
    def test_map_job_status(self, raw: str, expected: PipelineStatus):
        assert map_job_status(raw) is expected

    def test_no_remote_digest(self):
        assert _provider(lambda r: httpx.Response(200)).artifact_digest("42", _version(), "build") is None


class TestSearch:
    def test_search_projects(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["search"] == "agent"
            assert request.url.params["membership"] == "true"
            return httpx.Response(
                200,
                json=[{"id": 42, "path_with_namespace": "tools/agent", "default_branch": "main"}],
            )

        projects = _provider(handler).search_projects("agent")
        assert projects[0].id == 42
        assert projects[0].path_with_namespace == "tools/agent"
