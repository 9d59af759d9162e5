"""Registry: the public surface over tracked artifacts.

The Registry wires together the VersionResolver, RebuildFlow,
SyncController and ActionLog.  It owns the in-memory entry table, rebuilt
at start-up by replaying the action log, and persists tracking changes
(add/remove) to the tracking file when one is configured.

Scans are read-only and best-effort; update, rollback and rebuild are
serialized per artifact, across processes sharing a home directory, and
either complete with one log entry or leave nothing behind.  Scans never
touch files on disk; cleanup after an interrupted sync happens under the
artifact's lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from buildtrail.config import Settings
from buildtrail.config import settings as default_settings
from buildtrail.core.action_log import ActionLog
from buildtrail.core.entries import ArtifactTable
from buildtrail.core.errors import (
    BuildtrailError,
    ConfigurationError,
)
from buildtrail.core.locks import ArtifactLocks
from buildtrail.core.rebuild_flow import RebuildFlow
from buildtrail.core.resolver import VersionResolver
from buildtrail.core.sync_controller import SyncController
from buildtrail.core.tracking import load_tracking_config, save_tracking_config
from buildtrail.models.action_log import ActionLogEntry, ActionOperation
from buildtrail.models.artifacts import ArtifactEntry, ProviderKind
from buildtrail.models.config import ArtifactConfig, TrackingConfig
from buildtrail.models.rebuild import RebuildPolicy, RebuildRequest
from buildtrail.models.versions import (
    ArtifactStatus,
    Classification,
    RemoteVersion,
    ScanReport,
)
from buildtrail.providers.base import CIProvider
from buildtrail.providers.gitlab import GitLabProvider

logger = logging.getLogger(__name__)


class Registry:
    """Tracked artifacts and the operations that inspect or move them.

    Parameters
    ----------
    providers:
        CI provider adapters keyed by source id.
    action_log:
        The action log; replayed into ``entries`` on construction.
    entries:
        Tracked artifacts.  Installed versions recorded here are replaced by
        the log's state for every artifact the log knows.
    policy:
        Rebuild polling policy.
    scan_workers:
        Upper bound on concurrent status checks during ``scan``.
    actor:
        Recorded in every action log entry.
    clock, sleep:
        Passed to the RebuildFlow (tests inject fakes).
    lock_dir:
        Where the per-artifact lock files live; defaults to a ``locks``
        directory next to the action log.
    tracking, tracking_file:
        When ``tracking_file`` is set, ``add`` and ``remove`` persist the
        updated ``tracking`` there.
    """

    def __init__(
        self,
        providers: Mapping[str, CIProvider],
        action_log: ActionLog,
        entries: list[ArtifactEntry] | None = None,
        *,
        policy: RebuildPolicy | None = None,
        scan_workers: int = 8,
        actor: str = "",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        lock_dir: Path | None = None,
        tracking: TrackingConfig | None = None,
        tracking_file: Path | None = None,
    ) -> None:
        self._providers = dict(providers)
        self.action_log = action_log
        self._scan_workers = max(1, scan_workers)
        self._tracking = tracking or TrackingConfig()
        self._tracking_file = tracking_file
        self._tracking_lock = threading.Lock()

        self.table = ArtifactTable([self._replayed(e) for e in entries or []])
        self.locks = ArtifactLocks(lock_dir or action_log.path.parent / "locks")
        self.resolver = VersionResolver(self._providers)
        self.rebuild_flow = RebuildFlow(self.resolver, policy, clock=clock, sleep=sleep)
        self.controller = SyncController(
            self.table,
            self.resolver,
            self.rebuild_flow,
            action_log,
            self.locks,
            actor=actor,
        )

    # ------------------------------------------------------------------
    # Construction from settings
    # ------------------------------------------------------------------

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> Registry:
        """Build a Registry from the tracking file and action log in ``settings``.

        One ``GitLabProvider`` is created per configured source.
        """
        settings = settings or default_settings

        tracking = load_tracking_config(settings.tracking_file)
        providers: dict[str, CIProvider] = {}
        for source in tracking.sources:
            if source.kind is ProviderKind.GITLAB:
                providers[source.id] = GitLabProvider(
                    source.url,
                    source.resolve_token(settings.gitlab_token),
                    timeout=settings.http_timeout,
                    max_pages=settings.max_history_pages,
                )

        kwargs.setdefault("lock_dir", settings.home / "locks")
        return cls(
            providers,
            ActionLog(settings.action_log_path),
            tracking.to_entries(),
            policy=settings.rebuild_policy(),
            scan_workers=settings.scan_workers,
            actor=settings.actor,
            tracking=tracking,
            tracking_file=settings.tracking_file,
            **kwargs,
        )

    def close(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                close()

    def __enter__(self) -> Registry:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def names(self) -> list[str]:
        return self.table.names()

    def entries(self) -> list[ArtifactEntry]:
        """All tracked entries, sorted by name."""
        return sorted(self.table.snapshot(), key=lambda e: e.name)

    def get(self, name: str) -> ArtifactEntry:
        entry = self.table.get(name)
        if entry is None:
            raise ConfigurationError(f"Artifact {name!r} is not tracked")
        return entry

    def provider(self, source: str) -> CIProvider:
        provider = self._providers.get(source)
        if provider is None:
            raise ConfigurationError(f"No CI provider configured for source {source!r}")
        return provider

    def add(self, entry: ArtifactEntry) -> ArtifactEntry:
        """Start tracking ``entry``.

        The installed version is taken from the action log if the name has
        history there.
        """
        if entry.repo_ref is not None and entry.repo_ref.source not in self._providers:
            raise ConfigurationError(
                f"Artifact {entry.name!r} refers to unknown source {entry.repo_ref.source!r}"
            )
        if entry.name in self.table:
            raise ConfigurationError(f"Artifact {entry.name!r} is already tracked")

        entry = self._replayed(entry)
        self.table.put(entry)
        self._persist(lambda t: t.with_artifact(ArtifactConfig.from_entry(entry)))
        logger.info("Tracking %s at %s", entry.name, entry.local_path)
        return entry

    def remove(self, name: str) -> ArtifactEntry:
        """Stop tracking ``name``.  The local file and its log history are kept."""
        with self.locks.hold(name, "remove"):
            entry = self.table.remove(name)
            if entry is None:
                raise ConfigurationError(f"Artifact {name!r} is not tracked")
            self._persist(lambda t: t.without_artifact(name))
        logger.info("Stopped tracking %s", name)
        return entry

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def status(self, name: str) -> ArtifactStatus:
        """Classify one artifact against a freshly resolved timeline."""
        status = self.resolver.status(self.get(name))
        self.table.touch(name, datetime.now(timezone.utc))
        return status

    def scan(self) -> ScanReport:
        """Classify every tracked artifact concurrently.

        Per-artifact failures are collected in ``ScanReport.errors``; the
        scan never aborts because one artifact could not be checked.
        """
        entries = self.table.snapshot()
        statuses: dict[str, ArtifactStatus] = {}
        errors: dict[str, str] = {}
        if entries:
            workers = min(self._scan_workers, len(entries))
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="buildtrail-scan"
            ) as pool:
                futures = {pool.submit(self.resolver.status, e): e.name for e in entries}
                for future in as_completed(futures):
                    name = futures[future]
                    try:
                        statuses[name] = future.result()
                    except (BuildtrailError, OSError) as exc:
                        logger.warning("Scan of %s failed: %s", name, exc)
                        errors[name] = str(exc)
                        continue
                    self.table.touch(name, datetime.now(timezone.utc))

        ordered = dict(sorted(statuses.items()))
        report = ScanReport(
            classifications={n: s.classification for n, s in ordered.items()},
            statuses=ordered,
            errors=dict(sorted(errors.items())),
        )
        in_sync = sum(
            1 for c in report.classifications.values() if c is Classification.IN_SYNC
        )
        logger.info(
            "Scanned %d artifacts: %d in sync, %d errors",
            len(entries), in_sync, len(report.errors),
        )
        return report

    def timeline(self, name: str) -> list[RemoteVersion]:
        """The remote timeline of ``name``, newest first."""
        entry = self.get(name)
        if entry.repo_ref is None:
            raise ConfigurationError(f"Artifact {name!r} is not mapped to a repository")
        return self.resolver.resolve_timeline(entry.repo_ref)

    def history(self, name: str) -> list[ActionLogEntry]:
        """Action log entries of ``name``, most recent last."""
        return self.action_log.history(name)

    def verify_log(self, name: str | None = None) -> bool:
        """Verify the hash chain of one artifact, or of every logged artifact."""
        names = [name] if name is not None else self.action_log.artifact_names()
        for artifact_name in names:
            self.action_log.verify_chain(artifact_name)
        return True

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update(
        self,
        name: str,
        target_version: str | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> ActionLogEntry | None:
        """Install ``target_version`` (default: newest) of ``name``.

        Returns ``None`` without downloading when that version is already
        installed and intact.
        """
        return self.controller.sync(
            name, target_version, operation=ActionOperation.UPDATE, cancel=cancel
        )

    def rollback(
        self,
        name: str,
        steps: int = 1,
        *,
        cancel: threading.Event | None = None,
    ) -> ActionLogEntry | None:
        """Return ``name`` to the version it had before the ``steps``-th last change.

        ``steps=1`` undoes the most recent update or rollback.

        Raises
        ------
        VersionNotFoundError
            If the log does not go back ``steps`` changes, or that change
            started from nothing.
        """
        return self.controller.rollback(name, steps, cancel=cancel)

    def rebuild(
        self,
        name: str,
        target_version: str,
        *,
        cancel: threading.Event | None = None,
    ) -> RebuildRequest:
        """Rebuild ``target_version`` upstream and wait for its artifact."""
        return self.controller.rebuild(name, target_version, cancel=cancel)

    def recover(self, name: str | None = None) -> dict[str, list[str]]:
        """Clean up interrupted syncs of one artifact, or of every idle one.

        Artifacts with an operation in flight are skipped.  Returns the
        actions taken per artifact, omitting those with nothing to do.
        """
        names = [self.get(name).name] if name is not None else self.table.names()
        report: dict[str, list[str]] = {}
        for artifact_name in names:
            actions = self.controller.recover(artifact_name)
            if actions:
                report[artifact_name] = actions
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _replayed(self, entry: ArtifactEntry) -> ArtifactEntry:
        if not self.action_log.state_changes(entry.name):
            return entry
        version, digest = self.action_log.replay(entry.name)
        return entry.model_copy(update={"current_version": version, "current_hash": digest})

    def _persist(self, change: Callable[[TrackingConfig], TrackingConfig]) -> None:
        with self._tracking_lock:
            self._tracking = change(self._tracking)
            if self._tracking_file is not None:
                save_tracking_config(self._tracking_file, self._tracking)
