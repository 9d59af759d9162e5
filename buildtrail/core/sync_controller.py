"""Synchronization Controller: atomic, logged moves between artifact versions.

Lifecycle of ``sync`` (update or rollback):
1. Take the artifact's exclusive lock (fail fast on conflict) and clean up
   after any interrupted sync; stop if the target is already installed
2. Re-resolve the timeline; rebuild the target if its artifact expired
3. Download into a temp file next to ``local_path``
4. Verify the digest; never install unverified content
5. Keep the previous bytes as a backup, then ``os.replace`` over ``local_path``
6. Append the action log entry (restore the backup if that fails)
7. Swap in the updated ``ArtifactEntry``
8. Release the lock

The only visible on-disk mutation is the rename in step 5.  Temp files are
removed on every failure path.  A crash between steps 5 and 6 leaves a
backup that the next sync (or ``recover``) resolves against the action log.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from buildtrail.core.action_log import ActionLog
from buildtrail.core.entries import ArtifactTable
from buildtrail.core.errors import (
    ArtifactExpiredError,
    ConfigurationError,
    LockConflictError,
    HashMismatchError,
    SyncCancelledError,
    VersionNotFoundError,
)
from buildtrail.core.hasher import hash_file
from buildtrail.core.locks import ArtifactLocks
from buildtrail.core.rebuild_flow import RebuildFlow
from buildtrail.core.resolver import VersionResolver, find_version
from buildtrail.models.action_log import ActionLogEntry, ActionOperation
from buildtrail.models.artifacts import ArtifactEntry, RepoRef
from buildtrail.models.rebuild import RebuildRequest
from buildtrail.models.versions import RemoteVersion

logger = logging.getLogger(__name__)

_TEMP_SUFFIX = ".partial"
_BACKUP_SUFFIX = ".prev"


class SyncController:
    """Performs update, rollback and explicit rebuild for tracked artifacts.

    Parameters
    ----------
    table:
        The Registry's entry table; updated after every successful sync.
    resolver:
        Resolves timelines and provider digests.
    rebuild_flow:
        Used when a target artifact has expired upstream.
    action_log:
        Where every successful operation is recorded.
    locks:
        Per-artifact lock table (a fresh one by default).
    actor:
        Default actor recorded in log entries.
    """

    def __init__(
        self,
        table: ArtifactTable,
        resolver: VersionResolver,
        rebuild_flow: RebuildFlow,
        action_log: ActionLog,
        locks: ArtifactLocks | None = None,
        *,
        actor: str = "",
    ) -> None:
        self._table = table
        self._resolver = resolver
        self._rebuild_flow = rebuild_flow
        self._log = action_log
        self._locks = locks or ArtifactLocks()
        self._actor = actor

    @property
    def locks(self) -> ArtifactLocks:
        return self._locks

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(
        self,
        name: str,
        target_version: str | None = None,
        *,
        operation: ActionOperation = ActionOperation.UPDATE,
        actor: str | None = None,
        expected_hash: str | None = None,
        reverts_entry_id: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ActionLogEntry | None:
        """Move ``name`` to ``target_version`` (newest when ``None``).

        ``expected_hash`` is the digest the caller recorded for the target
        (rollbacks pass the log's ``from_hash``).  It is enforced unless the
        artifact had to be rebuilt, since rebuilds need not be
        byte-identical.

        Returns the sealed ``ActionLogEntry``, or ``None`` when the target
        is already installed and the file on disk still matches the log.
        """
        with self._locks.hold(name, operation.value):
            return self._sync_locked(
                name,
                target_version,
                operation=operation,
                actor=actor,
                expected_hash=expected_hash,
                reverts_entry_id=reverts_entry_id,
                cancel=cancel,
            )

    def rollback(
        self,
        name: str,
        steps: int = 1,
        *,
        actor: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ActionLogEntry | None:
        """Return ``name`` to the version it had before the ``steps``-th last change.

        The target is read from the action log after the lock is taken, so
        it always reflects the last completed change.

        Raises
        ------
        VersionNotFoundError
            If the log does not go back ``steps`` changes, or that change
            started from nothing.
        """
        with self._locks.hold(name, ActionOperation.ROLLBACK.value):
            changes = self._log.state_changes(name)
            if steps < 1 or steps > len(changes):
                raise VersionNotFoundError(
                    f"Cannot roll {name} back {steps} step(s); "
                    f"the log holds {len(changes)} change(s)"
                )
            reverted = changes[-steps]
            if reverted.from_version is None:
                raise VersionNotFoundError(
                    f"Nothing was installed for {name} before {reverted.describe()}"
                )
            return self._sync_locked(
                name,
                reverted.from_version,
                operation=ActionOperation.ROLLBACK,
                actor=actor,
                expected_hash=reverted.from_hash,
                reverts_entry_id=reverted.entry_id,
                cancel=cancel,
            )

    def _sync_locked(
        self,
        name: str,
        target_version: str | None,
        *,
        operation: ActionOperation,
        actor: str | None,
        expected_hash: str | None,
        reverts_entry_id: str | None,
        cancel: threading.Event | None,
    ) -> ActionLogEntry | None:
        """Body of ``sync``; the caller holds the lock for ``name``."""
        self._recover_locked(name)
        entry = self._entry(name)
        repo_ref = self._repo_ref(entry)

        timeline = self._resolver.resolve_timeline(repo_ref)
        if not timeline:
            raise VersionNotFoundError(
                f"No builds of {repo_ref.job_name!r} found on {repo_ref.branch!r} "
                f"for {name}"
            )
        version = timeline[0] if target_version is None else find_version(
            timeline, target_version
        )
        _check_cancel(cancel, name)

        if _already_installed(entry, version):
            logger.info("%s: already at %s, nothing to do", name, version.short_id)
            return None

        rebuilt = False
        if not version.artifact_available:
            logger.info(
                "%s: artifact for %s expired upstream, rebuilding",
                name, version.short_id,
            )
            _, version = self._rebuild_flow.run(name, repo_ref, version, cancel=cancel)
            rebuilt = True

        entry.local_path.parent.mkdir(parents=True, exist_ok=True)
        temp = _temp_path(entry.local_path)
        try:
            try:
                self._download(repo_ref, version, temp)
            except ArtifactExpiredError:
                if rebuilt:
                    raise
                logger.info(
                    "%s: download of %s reported expiry, rebuilding",
                    name, version.short_id,
                )
                _, version = self._rebuild_flow.run(
                    name, repo_ref, version, cancel=cancel
                )
                rebuilt = True
                self._download(repo_ref, version, temp)
            _check_cancel(cancel, name)

            new_hash = hash_file(temp)
            self._verify(name, repo_ref, version, new_hash, expected_hash, rebuilt)
            _check_cancel(cancel, name)

            sealed = self._install(
                entry.local_path,
                temp,
                ActionLogEntry(
                    artifact_name=name,
                    operation=operation,
                    from_version=entry.current_version,
                    to_version=version.version_id,
                    from_hash=entry.current_hash,
                    to_hash=new_hash,
                    actor=actor or self._actor,
                    reverts_entry_id=reverts_entry_id,
                ),
            )
        finally:
            temp.unlink(missing_ok=True)

        self._table.put(
            entry.model_copy(
                update={
                    "current_version": version.version_id,
                    "current_hash": new_hash,
                    "last_scanned": datetime.now(timezone.utc),
                }
            )
        )
        logger.info("%s %s (sha256 %s)", name, sealed.describe(), new_hash[:12])
        return sealed

    # ------------------------------------------------------------------
    # Explicit rebuild
    # ------------------------------------------------------------------

    def rebuild(
        self,
        name: str,
        target_version: str,
        *,
        actor: str | None = None,
        cancel: threading.Event | None = None,
    ) -> RebuildRequest:
        """Regenerate ``target_version`` upstream without installing it.

        A ``rebuild-trigger`` entry is logged once the rebuild succeeds.
        """
        with self._locks.hold(name, ActionOperation.REBUILD_TRIGGER.value):
            entry = self._current(name)
            repo_ref = self._repo_ref(entry)
            version = find_version(self._resolver.resolve_timeline(repo_ref), target_version)
            request, fresh = self._rebuild_flow.run(name, repo_ref, version, cancel=cancel)
            self._log.append(
                ActionLogEntry(
                    artifact_name=name,
                    operation=ActionOperation.REBUILD_TRIGGER,
                    from_version=entry.current_version,
                    to_version=fresh.version_id,
                    from_hash=entry.current_hash,
                    to_hash=entry.current_hash,
                    actor=actor or self._actor,
                )
            )
            return request

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def recover(self, name: str) -> list[str]:
        """Clean up after an interrupted sync of ``name``.

        Skipped, returning an empty list, while another operation holds the
        artifact: its temp file and backup are still in use.  Every sync
        also runs this cleanup once it has the lock.

        Returns a description of every action taken.
        """
        try:
            with self._locks.hold(name, "recover"):
                return self._recover_locked(name)
        except LockConflictError:
            logger.debug("%s: busy, recovery deferred", name)
            return []

    def _recover_locked(self, name: str) -> list[str]:
        """Leftover temp files are removed.  A leftover backup means a sync
        stopped somewhere between the backup and its removal: if the file on
        disk matches the log the install was recorded and the backup goes;
        if the backup matches the log the install was never recorded and the
        backup is moved back.
        """
        actions: list[str] = []
        entry = self._current(name)
        local_path = entry.local_path
        if not local_path.parent.is_dir():
            return actions

        for partial in local_path.parent.glob(f".{local_path.name}.*{_TEMP_SUFFIX}"):
            partial.unlink(missing_ok=True)
            actions.append(f"removed partial download {partial.name}")

        for backup in sorted(local_path.parent.glob(f".{local_path.name}.*{_BACKUP_SUFFIX}")):
            on_disk = hash_file(local_path) if local_path.is_file() else None
            if on_disk is not None and on_disk == entry.current_hash:
                backup.unlink()
                actions.append(f"removed backup {backup.name} of a logged install")
            elif hash_file(backup) == entry.current_hash:
                os.replace(backup, local_path)
                actions.append(f"restored {local_path.name} from unlogged install")
            else:
                logger.warning(
                    "%s: backup %s matches neither the log nor the file; left in place",
                    name, backup,
                )

        for action in actions:
            logger.warning("%s: %s", name, action)
        return actions

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _current(self, name: str) -> ArtifactEntry:
        """The entry for ``name`` with its installed state re-read from the log.

        Another process sharing the log may have moved the artifact since
        this table was built; the caller holds the lock, so the log's last
        change is the installed state.
        """
        entry = self._entry(name)
        last = self._log.last_change(name)
        if last is None:
            return entry
        if (last.to_version, last.to_hash) != (entry.current_version, entry.current_hash):
            logger.info(
                "%s: installed state changed elsewhere, now %s", name, last.to_version
            )
            entry = entry.model_copy(
                update={"current_version": last.to_version, "current_hash": last.to_hash}
            )
            self._table.put(entry)
        return entry

    def _entry(self, name: str) -> ArtifactEntry:
        entry = self._table.get(name)
        if entry is None:
            raise ConfigurationError(f"Artifact {name!r} is not tracked")
        return entry

    @staticmethod
    def _repo_ref(entry: ArtifactEntry) -> RepoRef:
        if entry.repo_ref is None:
            raise ConfigurationError(
                f"Artifact {entry.name!r} is not mapped to a repository"
            )
        return entry.repo_ref

    def _download(self, repo_ref: RepoRef, version: RemoteVersion, dest: Path) -> None:
        provider = self._resolver.provider_for(repo_ref)
        logger.debug("Downloading %s of %s to %s", version.short_id, repo_ref.project, dest)
        provider.download_artifact(
            repo_ref.project,
            version,
            repo_ref.job_name,
            dest,
            artifact_pattern=repo_ref.artifact_pattern,
        )

    def _verify(
        self,
        name: str,
        repo_ref: RepoRef,
        version: RemoteVersion,
        actual: str,
        expected_hash: str | None,
        rebuilt: bool,
    ) -> None:
        expected = self._resolver.remote_hash(repo_ref, version)
        if expected is None and expected_hash is not None:
            if not rebuilt:
                expected = expected_hash
            elif actual != expected_hash:
                logger.warning(
                    "%s: rebuilt %s differs from the recorded sha256 %s",
                    name, version.short_id, expected_hash[:12],
                )
        if expected is not None and expected != actual:
            raise HashMismatchError(name, expected, actual)

    def _install(self, local_path: Path, temp: Path, log_entry: ActionLogEntry) -> ActionLogEntry:
        backup: Path | None = None
        if local_path.exists():
            shutil.copymode(local_path, temp)
            backup = _backup(local_path)

        os.replace(temp, local_path)
        try:
            sealed = self._log.append(log_entry)
        except Exception:
            logger.exception(
                "Action log append failed for %s; restoring previous file",
                log_entry.artifact_name,
            )
            if backup is not None:
                os.replace(backup, local_path)
            else:
                local_path.unlink(missing_ok=True)
            raise

        if backup is not None:
            try:
                backup.unlink()
            except OSError as exc:
                logger.warning("Could not remove backup %s: %s", backup, exc)
        return sealed


def _temp_path(local_path: Path) -> Path:
    fd, name = tempfile.mkstemp(
        dir=local_path.parent, prefix=f".{local_path.name}.", suffix=_TEMP_SUFFIX
    )
    os.close(fd)
    return Path(name)


def _backup(local_path: Path) -> Path:
    backup = local_path.with_name(f".{local_path.name}.{uuid.uuid4().hex[:8]}{_BACKUP_SUFFIX}")
    try:
        os.link(local_path, backup)
    except OSError:
        shutil.copy2(local_path, backup)
    return backup


def _check_cancel(cancel: threading.Event | None, name: str) -> None:
    if cancel is not None and cancel.is_set():
        raise SyncCancelledError(f"Sync of {name} cancelled; {name} left untouched")


def _already_installed(entry: ArtifactEntry, version: RemoteVersion) -> bool:
    if entry.current_version != version.version_id or entry.current_hash is None:
        return False
    local_path = entry.local_path
    return local_path.is_file() and hash_file(local_path) == entry.current_hash
