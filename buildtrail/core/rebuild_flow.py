"""Rebuild Flow: re-run a pipeline and poll until its artifact is retrievable.

States: ``requested -> polling -> {succeeded, failed, timed_out}``.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Bounded exponential backoff between polls
- A total elapsed-time budget (and optional poll cap)
- No automatic retry after a terminal state; callers start a new request
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone

from buildtrail.core.errors import (
    BuildtrailError,
    InvalidTransitionError,
    NetworkError,
    RebuildFailedError,
    RebuildTimeoutError,
    SyncCancelledError,
    VersionNotFoundError,
)
from buildtrail.core.resolver import VersionResolver
from buildtrail.models.artifacts import RepoRef
from buildtrail.models.rebuild import (
    VALID_TRANSITIONS,
    PipelineStatus,
    RebuildPolicy,
    RebuildRequest,
    RebuildState,
)
from buildtrail.models.versions import RemoteVersion

logger = logging.getLogger(__name__)


class RebuildFlow:
    """Drives one rebuild request to a terminal state.

    Parameters
    ----------
    resolver:
        Used to reach the provider and to re-resolve the rebuilt version.
    policy:
        Backoff and budget settings.
    clock:
        Monotonic clock in seconds (injectable for tests).
    sleep:
        Wait function used when no cancel event is supplied.
    """

    def __init__(
        self,
        resolver: VersionResolver,
        policy: RebuildPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._resolver = resolver
        self._policy = policy or RebuildPolicy()
        self._clock = clock
        self._sleep = sleep

    @property
    def policy(self) -> RebuildPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    @staticmethod
    def transition(
        request: RebuildRequest, target: RebuildState, *, error: str = ""
    ) -> None:
        """Move ``request`` to ``target``, validating against the state table."""
        current = request.state
        allowed = VALID_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot move rebuild {request.request_id} from {current.value} "
                f"to {target.value}. Allowed: {sorted(s.value for s in allowed)}"
            )
        request.state = target
        if error:
            request.error = error
        if current is not target:
            logger.debug(
                "Rebuild %s for %s: %s->%s",
                request.request_id, request.artifact_name, current.value, target.value,
            )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        artifact_name: str,
        repo_ref: RepoRef,
        version: RemoteVersion,
        *,
        cancel: threading.Event | None = None,
    ) -> tuple[RebuildRequest, RemoteVersion]:
        """Rebuild ``version`` and wait for its artifact.

        Returns the terminal (succeeded) request and the fresh
        ``RemoteVersion`` with ``artifact_available == True``.

        Raises
        ------
        RebuildFailedError
            The trigger was rejected or the pipeline failed.
        RebuildTimeoutError
            The budget ran out while the pipeline was still running.
        SyncCancelledError
            ``cancel`` was set while waiting.
        """
        request = RebuildRequest(
            artifact_name=artifact_name, target_version=version.version_id
        )
        provider = self._resolver.provider_for(repo_ref)

        logger.info(
            "Requesting rebuild of %s at %s", artifact_name, version.short_id
        )
        try:
            request.handle = provider.trigger_rebuild(repo_ref.project, version)
        except BuildtrailError as exc:
            self.transition(request, RebuildState.FAILED, error=str(exc))
            raise RebuildFailedError(
                f"Could not trigger a rebuild of {artifact_name} at "
                f"{version.short_id}: {exc}",
                request,
            ) from exc
        self.transition(request, RebuildState.POLLING)

        started = self._clock()
        while True:
            remaining = self._policy.budget_seconds - (self._clock() - started)
            polls_exhausted = (
                self._policy.max_polls is not None
                and request.attempts >= self._policy.max_polls
            )
            if remaining <= 0 or polls_exhausted:
                message = (
                    f"Rebuild of {artifact_name} at {version.short_id} still running "
                    f"after {request.attempts} polls"
                )
                self.transition(request, RebuildState.TIMED_OUT, error=message)
                raise RebuildTimeoutError(message, request)

            self._wait(min(self._policy.delay_for(request.attempts), remaining), request, cancel)

            try:
                status = provider.poll_status(request.handle)
            except NetworkError as exc:
                self.transition(request, RebuildState.FAILED, error=str(exc))
                raise RebuildFailedError(
                    f"Lost track of the rebuild of {artifact_name}: {exc}", request
                ) from exc
            request.attempts += 1
            request.last_polled_at = datetime.now(timezone.utc)

            if status is PipelineStatus.FAILED:
                message = f"Pipeline rebuilding {artifact_name} at {version.short_id} failed"
                self.transition(request, RebuildState.FAILED, error=message)
                raise RebuildFailedError(message, request)

            if status is PipelineStatus.SUCCEEDED:
                fresh = self._refresh(repo_ref, version.version_id)
                if fresh is not None and fresh.artifact_available:
                    self.transition(request, RebuildState.SUCCEEDED)
                    logger.info(
                        "Rebuild of %s at %s succeeded after %d polls",
                        artifact_name, version.short_id, request.attempts,
                    )
                    return request, fresh
                logger.debug(
                    "Pipeline for %s succeeded but artifact not retrievable yet",
                    artifact_name,
                )

            self.transition(request, RebuildState.POLLING)

    def _refresh(self, repo_ref: RepoRef, version_id: str) -> RemoteVersion | None:
        try:
            return self._resolver.refresh_version(repo_ref, version_id)
        except (NetworkError, VersionNotFoundError) as exc:
            logger.warning("Could not re-resolve %s after rebuild: %s", version_id[:8], exc)
            return None

    def _wait(
        self,
        delay: float,
        request: RebuildRequest,
        cancel: threading.Event | None,
    ) -> None:
        if cancel is None:
            self._sleep(delay)
            return
        if cancel.wait(delay):
            self.transition(request, RebuildState.FAILED, error="cancelled")
            raise SyncCancelledError(
                f"Rebuild of {request.artifact_name} cancelled while polling"
            )
