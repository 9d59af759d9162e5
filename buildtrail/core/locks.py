"""Per-artifact exclusive locks for mutating operations.

Locks never queue: a second acquire for the same artifact fails immediately
with ``LockConflictError`` and the caller decides whether to retry.  Locks
for different artifacts are independent.

With a ``lock_dir`` every hold also takes an exclusive ``flock`` on
``<lock_dir>/<name>.lock``, so two processes sharing a home directory
refuse each other's mutations the same way two threads do.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import quote

from buildtrail.core.errors import LockConflictError

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"


class ArtifactLocks:
    """Table of non-blocking locks keyed by artifact name.

    Parameters
    ----------
    lock_dir:
        Directory for the cross-process lock files.  ``None`` keeps the
        locks local to this process.
    """

    def __init__(self, lock_dir: Path | None = None) -> None:
        self._lock_dir = Path(lock_dir) if lock_dir is not None else None
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @property
    def lock_dir(self) -> Path | None:
        return self._lock_dir

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    def _lock_file(self, name: str) -> Path:
        assert self._lock_dir is not None
        return self._lock_dir / f"{quote(name, safe='')}{_LOCK_SUFFIX}"

    def is_held(self, name: str) -> bool:
        """True if this process, or another one sharing ``lock_dir``, holds ``name``."""
        if self._lock_for(name).locked():
            return True
        if self._lock_dir is None:
            return False
        path = self._lock_file(name)
        if not path.exists():
            return False
        fd = os.open(path, os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)

    @contextmanager
    def hold(self, name: str, operation: str = "sync") -> Iterator[None]:
        """Hold the lock for ``name`` for the duration of the block.

        Raises
        ------
        LockConflictError
            If another operation on ``name`` is in flight, in this process
            or in another one sharing ``lock_dir``.
        """
        lock = self._lock_for(name)
        if not lock.acquire(blocking=False):
            raise _conflict(name, operation)
        fd: int | None = None
        try:
            if self._lock_dir is not None:
                fd = self._acquire_file(name, operation)
            logger.debug("Locked %s for %s", name, operation)
            yield
        finally:
            if fd is not None:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
            lock.release()
            logger.debug("Released %s after %s", name, operation)

    def _acquire_file(self, name: str, operation: str) -> int:
        path = self._lock_file(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise _conflict(name, operation) from None
        return fd


def _conflict(name: str, operation: str) -> LockConflictError:
    return LockConflictError(
        f"Another operation is already in progress for {name!r}; "
        f"{operation} refused"
    )
