"""GitLab REST API v4 adapter.

Builds are GitLab *jobs*: the job named after ``RepoRef.job_name`` on the
tracked branch.  A version is the commit the job ran for; ``job_id`` and
``pipeline_id`` locate the build.  GitLab reports no checksum for job
artifacts, so ``artifact_digest`` is always ``None`` and the core hashes the
downloaded file itself.

Job archives are zip files.  When ``artifact_pattern`` is given, the member
whose name ends with the pattern is extracted; otherwise the archive is
stored as-is.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict

from buildtrail.core.errors import (
    ArtifactExpiredError,
    NetworkError,
    VersionNotFoundError,
)
from buildtrail.models.rebuild import PipelineHandle, PipelineStatus
from buildtrail.models.versions import RemoteVersion

logger = logging.getLogger(__name__)

TOKEN_HEADER = "PRIVATE-TOKEN"

_RUNNING_STATUSES = {
    "created",
    "pending",
    "preparing",
    "waiting_for_resource",
    "scheduled",
    "manual",
    "running",
}
_FAILED_STATUSES = {"failed", "canceled", "skipped"}


class ProjectSummary(BaseModel):
    """A project returned by ``search_projects``."""

    model_config = ConfigDict(frozen=True)

    id: int
    path_with_namespace: str
    default_branch: str | None = None
    web_url: str = ""


def _has_artifacts(job: dict[str, Any], now: datetime) -> bool:
    if not job.get("artifacts_file"):
        return False
    expire_at = job.get("artifacts_expire_at")
    if expire_at:
        expires = datetime.fromisoformat(expire_at.replace("Z", "+00:00"))
        return expires > now
    return True


def map_job_status(status: str) -> PipelineStatus:
    """Map a GitLab job status onto the provider-neutral ``PipelineStatus``."""
    if status == "success":
        return PipelineStatus.SUCCEEDED
    if status in _FAILED_STATUSES:
        return PipelineStatus.FAILED
    if status not in _RUNNING_STATUSES:
        logger.warning("Unknown GitLab job status %r, treating as running", status)
    return PipelineStatus.RUNNING


class GitLabProvider:
    """``CIProvider`` implementation for GitLab.

    Parameters
    ----------
    base_url:
        GitLab instance URL, e.g. ``https://gitlab.com/``.
    token:
        Personal/project access token sent as ``PRIVATE-TOKEN``.
    timeout:
        Per-request timeout in seconds.
    max_pages:
        How many pages of job history to walk when listing versions.
    per_page:
        Page size for list endpoints.
    transport:
        Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str = "https://gitlab.com/",
        token: str = "",
        *,
        timeout: float = 30.0,
        max_pages: int = 5,
        per_page: int = 100,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_pages = max_pages
        self._per_page = per_page
        headers = {TOKEN_HEADER: token} if token else {}
        self._client = httpx.Client(
            base_url=f"{self._base_url}/api/v4",
            headers=headers,
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _project_path(project: str) -> str:
        return f"/projects/{quote(str(project), safe='')}"

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise NetworkError(f"GitLab {method} {path} failed: {exc}") from exc
        if response.is_error:
            raise NetworkError(
                f"GitLab {method} {path} answered {response.status_code}: "
                f"{response.text[:200]}"
            )
        return response

    def _paged(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for page in range(1, self._max_pages + 1):
            response = self._request(
                "GET", path, params={**params, "per_page": self._per_page, "page": page}
            )
            batch = response.json()
            items.extend(batch)
            if len(batch) < self._per_page:
                break
        return items

    # ------------------------------------------------------------------
    # CIProvider
    # ------------------------------------------------------------------

    def list_branches(self, project: str) -> list[str]:
        branches = self._paged(f"{self._project_path(project)}/repository/branches", {})
        return [b["name"] for b in branches]

    def list_versions(
        self, project: str, branch: str, job_name: str
    ) -> list[RemoteVersion]:
        jobs = self._paged(
            f"{self._project_path(project)}/jobs", {"scope[]": "success"}
        )
        now = datetime.now(timezone.utc)
        versions: list[RemoteVersion] = []
        for job in jobs:
            if job.get("ref") != branch or job.get("name") != job_name:
                continue
            commit = job["commit"]
            versions.append(
                RemoteVersion(
                    version_id=commit["id"],
                    commit_timestamp=commit["created_at"],
                    author=commit.get("author_name") or commit.get("author_email", ""),
                    message=commit.get("title", ""),
                    branch=branch,
                    artifact_available=_has_artifacts(job, now),
                    remote_hash=None,
                    pipeline_id=(job.get("pipeline") or {}).get("id"),
                    job_id=job["id"],
                    web_url=job.get("web_url", ""),
                )
            )
        logger.debug(
            "GitLab: %d %r builds on %s for project %s",
            len(versions), job_name, branch, project,
        )
        return versions

    def download_artifact(
        self,
        project: str,
        version: RemoteVersion,
        job_name: str,
        dest_path: Path,
        *,
        artifact_pattern: str | None = None,
    ) -> None:
        if version.job_id is None:
            raise VersionNotFoundError(
                f"Version {version.short_id} of {job_name} has no GitLab job id"
            )
        path = f"{self._project_path(project)}/jobs/{version.job_id}/artifacts"
        with tempfile.SpooledTemporaryFile(max_size=16 * 1024 * 1024) as spool:
            try:
                with self._client.stream("GET", path) as response:
                    if response.status_code in (404, 410):
                        raise ArtifactExpiredError(
                            f"Artifacts of job {version.job_id} "
                            f"({version.short_id}) are no longer available"
                        )
                    if response.is_error:
                        raise NetworkError(
                            f"GitLab GET {path} answered {response.status_code}"
                        )
                    for chunk in response.iter_bytes():
                        spool.write(chunk)
            except httpx.HTTPError as exc:
                raise NetworkError(f"GitLab GET {path} failed: {exc}") from exc

            spool.seek(0)
            if artifact_pattern is None:
                with open(dest_path, "wb") as out:
                    shutil.copyfileobj(spool, out)
            else:
                self._extract_member(spool, artifact_pattern, dest_path, version)
        logger.debug("GitLab: downloaded job %s to %s", version.job_id, dest_path)

    @staticmethod
    def _extract_member(
        archive: Any, pattern: str, dest_path: Path, version: RemoteVersion
    ) -> None:
        try:
            with zipfile.ZipFile(archive) as zf:
                matches = [n for n in zf.namelist() if n.endswith(pattern)]
                if not matches:
                    raise VersionNotFoundError(
                        f"No file matching {pattern!r} in artifacts of job "
                        f"{version.job_id} ({version.short_id})"
                    )
                member = matches[-1]
                logger.debug("GitLab: extracting %s", member)
                with zf.open(member) as src, open(dest_path, "wb") as out:
                    shutil.copyfileobj(src, out)
        except zipfile.BadZipFile as exc:
            raise NetworkError(
                f"Artifacts of job {version.job_id} are not a zip archive"
            ) from exc

    def trigger_rebuild(self, project: str, version: RemoteVersion) -> PipelineHandle:
        if version.job_id is None:
            raise VersionNotFoundError(
                f"Version {version.short_id} has no GitLab job to retry"
            )
        response = self._request(
            "POST", f"{self._project_path(project)}/jobs/{version.job_id}/retry"
        )
        job = response.json()
        handle = PipelineHandle(
            project=str(project),
            version_id=version.version_id,
            job_id=job["id"],
            pipeline_id=(job.get("pipeline") or {}).get("id"),
            web_url=job.get("web_url", ""),
        )
        logger.info(
            "GitLab: retried job %s for %s as job %s",
            version.job_id, version.short_id, handle.job_id,
        )
        return handle

    def poll_status(self, handle: PipelineHandle) -> PipelineStatus:
        response = self._request(
            "GET", f"{self._project_path(handle.project)}/jobs/{handle.job_id}"
        )
        return map_job_status(response.json().get("status", ""))

    def artifact_digest(
        self, project: str, version: RemoteVersion, job_name: str
    ) -> str | None:
        return None

    # ------------------------------------------------------------------
    # Project discovery
    # ------------------------------------------------------------------

    def search_projects(self, query: str = "", *, limit: int = 30) -> list[ProjectSummary]:
        """Projects the token is a member of, most recently active first."""
        response = self._request(
            "GET",
            "/projects",
            params={
                "membership": "true",
                "order_by": "last_activity_at",
                "per_page": limit,
                "search": query,
                "search_namespaces": "true",
            },
        )
        return [ProjectSummary.model_validate(p) for p in response.json()]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitLabProvider:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"GitLabProvider(base_url={self._base_url!r})"
