"""Rebuild Flow models: state table, polling policy and request tracking."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RebuildState(str, Enum):
    """States of a single rebuild request."""

    REQUESTED = "requested"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self]


# Valid state transitions: enforced by RebuildFlow.
# Terminal states have no outgoing transitions; a retry is a new request.
VALID_TRANSITIONS: dict[RebuildState, set[RebuildState]] = {
    RebuildState.REQUESTED: {RebuildState.POLLING, RebuildState.FAILED},
    RebuildState.POLLING: {
        RebuildState.POLLING,
        RebuildState.SUCCEEDED,
        RebuildState.FAILED,
        RebuildState.TIMED_OUT,
    },
    RebuildState.SUCCEEDED: set(),  # terminal
    RebuildState.FAILED: set(),  # terminal
    RebuildState.TIMED_OUT: set(),  # terminal
}


class PipelineStatus(str, Enum):
    """Provider-neutral pipeline status reported by ``poll_status``."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineHandle(BaseModel):
    """Opaque reference to a triggered rebuild, as returned by the adapter."""

    model_config = ConfigDict(frozen=True)

    project: str
    version_id: str
    job_id: int | None = None
    pipeline_id: int | None = None
    web_url: str = ""


class RebuildPolicy(BaseModel):
    """Bounded exponential backoff used while polling a rebuild.

    Parameters
    ----------
    initial_delay:
        Seconds to wait before the first poll.
    multiplier:
        Factor applied to the delay after every poll.
    max_delay:
        Upper bound for a single wait.
    budget_seconds:
        Total elapsed time after which a still-running pipeline is
        declared timed out.
    max_polls:
        Optional hard cap on the number of polls.
    """

    model_config = ConfigDict(frozen=True)

    initial_delay: float = Field(default=5.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=60.0, ge=0.0)
    budget_seconds: float = Field(default=1800.0, gt=0.0)
    max_polls: int | None = Field(default=None, ge=1)

    def delay_for(self, attempt: int) -> float:
        """Delay before poll number ``attempt`` (0-based).

        Grows step by step and stops at ``max_delay``, so any attempt
        number is safe.
        """
        delay = self.initial_delay
        for _ in range(attempt):
            if delay >= self.max_delay or delay == 0.0 or self.multiplier == 1.0:
                break
            delay *= self.multiplier
        return min(delay, self.max_delay)


class RebuildRequest(BaseModel):
    """Mutable tracking record for one rebuild attempt.

    Lives only for the duration of the attempt and is handed back to the
    caller in its terminal state.
    """

    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    artifact_name: str
    target_version: str
    state: RebuildState = RebuildState.REQUESTED
    attempts: int = 0
    requested_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    last_polled_at: datetime | None = None
    handle: PipelineHandle | None = None
    error: str = ""
