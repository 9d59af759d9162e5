"""Action log entry model (append-only, hash-chained per artifact).

The log is the only record of what was installed before.  Replaying the
state-changing entries for an artifact from the empty state reproduces its
``current_version`` and ``current_hash``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ActionOperation(str, Enum):
    """Tagged operations recorded in the action log."""

    UPDATE = "update"
    ROLLBACK = "rollback"
    REBUILD_TRIGGER = "rebuild-trigger"

    @property
    def changes_state(self) -> bool:
        """Whether replay moves the artifact to ``to_version``/``to_hash``."""
        return self is not ActionOperation.REBUILD_TRIGGER


class ActionLogEntry(BaseModel):
    """A single entry in the action log."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    artifact_name: str
    operation: ActionOperation
    from_version: str | None = None
    to_version: str | None = None
    from_hash: str | None = None
    to_hash: str | None = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    actor: str = ""
    reverts_entry_id: str | None = None  # set on rollbacks
    previous_entry_hash: str = ""  # entry_hash of the artifact's previous entry
    entry_hash: str = ""  # computed on append, seals this entry

    def describe(self) -> str:
        """``update: c2 -> c3`` style one-line summary."""
        return f"{self.operation.value}: {self.from_version or '-'} -> {self.to_version or '-'}"
