"""Append-only, hash-chained Action Log backed by SQLite.

The Action Log is the source of truth for what was installed.  An
``ArtifactEntry``'s ``current_version``/``current_hash`` can always be
rebuilt by replaying the log.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained per artifact: each entry includes the SHA-256 of the previous
  entry for the same artifact.
- Total order across artifacts via the AUTOINCREMENT id.
- Appends are serialized by a writer lock within the process and by a
  ``BEGIN IMMEDIATE`` transaction across processes; reads are concurrent
  (WAL journal mode).
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path

from buildtrail.core.errors import ActionLogIntegrityError
from buildtrail.core.hasher import compute_entry_hash
from buildtrail.models.action_log import ActionLogEntry, ActionOperation

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LOG = """
CREATE TABLE IF NOT EXISTS action_log (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    artifact_name       TEXT NOT NULL,
    operation           TEXT NOT NULL,
    from_version        TEXT,
    to_version          TEXT,
    from_hash           TEXT,
    to_hash             TEXT,
    timestamp_utc       TEXT NOT NULL,
    actor               TEXT NOT NULL DEFAULT '',
    reverts_entry_id    TEXT,
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_ARTIFACT = """
CREATE INDEX IF NOT EXISTS idx_artifact ON action_log(artifact_name, id);
"""

# seconds a writer waits for another process's transaction
_BUSY_TIMEOUT = 30.0

_COLUMNS = (
    "entry_id, artifact_name, operation, from_version, to_version, from_hash, "
    "to_hash, timestamp_utc, actor, reverts_entry_id, previous_entry_hash, entry_hash"
)


class ActionLog:
    """Append-only, hash-chained action log.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self, *, autocommit: bool = False) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=_BUSY_TIMEOUT,
            check_same_thread=False,
            isolation_level=None if autocommit else "",
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LOG)
            conn.execute(_CREATE_IDX_ARTIFACT)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: ActionLogEntry) -> ActionLogEntry:
        """Append an entry, computing its hash chain link.

        Returns the sealed entry with ``previous_entry_hash`` and
        ``entry_hash`` set.  The timestamp is nudged forward if it does not
        strictly follow the artifact's previous entry.

        The chain tail is read and the new row inserted inside one
        ``BEGIN IMMEDIATE`` transaction, so writers in other processes
        cannot fork the chain between the two.
        """
        with self._write_lock:
            conn = self._connect(autocommit=True)
            try:
                conn.execute("BEGIN IMMEDIATE")
                previous = self._latest(conn, entry.artifact_name)
                previous_hash = previous.entry_hash if previous else ""
                timestamp = entry.timestamp
                if previous is not None and timestamp <= previous.timestamp:
                    timestamp = previous.timestamp + timedelta(microseconds=1)

                staged = entry.model_copy(
                    update={
                        "timestamp": timestamp,
                        "previous_entry_hash": previous_hash,
                        "entry_hash": "",
                    }
                )
                sealed = staged.model_copy(
                    update={"entry_hash": compute_entry_hash(staged.model_dump(mode="json"))}
                )
                self._insert(conn, sealed)
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

        logger.debug(
            "ActionLog: appended %s for %s (%s)",
            sealed.entry_id,
            sealed.artifact_name,
            sealed.describe(),
        )
        return sealed

    @staticmethod
    def _insert(conn: sqlite3.Connection, entry: ActionLogEntry) -> None:
        """Insert a sealed entry inside the caller's transaction."""
        data = entry.model_dump(mode="json")
        conn.execute(
            f"INSERT INTO action_log ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.entry_id,
                entry.artifact_name,
                entry.operation.value,
                entry.from_version,
                entry.to_version,
                entry.from_hash,
                entry.to_hash,
                data["timestamp"],
                entry.actor,
                entry.reverts_entry_id,
                entry.previous_entry_hash,
                entry.entry_hash,
            ),
        )

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def latest(self, artifact_name: str) -> ActionLogEntry | None:
        """Return the most recent entry for an artifact, or None."""
        with self._connect() as conn:
            return self._latest(conn, artifact_name)

    def _latest(self, conn: sqlite3.Connection, artifact_name: str) -> ActionLogEntry | None:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM action_log WHERE artifact_name = ? "
            "ORDER BY id DESC LIMIT 1",
            (artifact_name,),
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def history(self, artifact_name: str) -> list[ActionLogEntry]:
        """Return all entries for an artifact, most recent last."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM action_log WHERE artifact_name = ? "
                "ORDER BY id ASC",
                (artifact_name,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def state_changes(self, artifact_name: str) -> list[ActionLogEntry]:
        """Entries that moved the artifact (updates and rollbacks), oldest first."""
        return [e for e in self.history(artifact_name) if e.operation.changes_state]

    def last_change(self, artifact_name: str) -> ActionLogEntry | None:
        """The most recent update or rollback of an artifact, or None."""
        moving = [op.value for op in ActionOperation if op.changes_state]
        placeholders = ", ".join("?" for _ in moving)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM action_log WHERE artifact_name = ? "
                f"AND operation IN ({placeholders}) ORDER BY id DESC LIMIT 1",
                (artifact_name, *moving),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def get(self, entry_id: str) -> ActionLogEntry | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM action_log WHERE entry_id = ?",
                (entry_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def artifact_names(self) -> list[str]:
        """Return every artifact name that has at least one entry."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT artifact_name FROM action_log GROUP BY artifact_name "
                "ORDER BY MIN(id)"
            ).fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def replay(self, artifact_name: str) -> tuple[str | None, str | None]:
        """Fold the log from the empty state into ``(version, hash)``."""
        version: str | None = None
        digest: str | None = None
        for entry in self.state_changes(artifact_name):
            version, digest = entry.to_version, entry.to_hash
        return version, digest

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, artifact_name: str) -> bool:
        """Verify hash chain integrity and version continuity for an artifact.

        Returns True if the chain is valid, raises ActionLogIntegrityError
        otherwise.
        """
        prev_hash = ""
        state: tuple[str | None, str | None] = (None, None)
        for entry in self.history(artifact_name):
            if entry.previous_entry_hash != prev_hash:
                raise ActionLogIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )

            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise ActionLogIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )

            if entry.operation.changes_state:
                if (entry.from_version, entry.from_hash) != state:
                    raise ActionLogIntegrityError(
                        f"Entry {entry.entry_id} starts from "
                        f"{entry.from_version!r} but the log was at {state[0]!r}"
                    )
                state = (entry.to_version, entry.to_hash)

            prev_hash = entry.entry_hash

        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> ActionLogEntry:
        """Convert a SQLite row tuple to an ActionLogEntry."""
        (
            entry_id,
            artifact_name,
            operation,
            from_version,
            to_version,
            from_hash,
            to_hash,
            timestamp_utc,
            actor,
            reverts_entry_id,
            previous_entry_hash,
            entry_hash,
        ) = row
        return ActionLogEntry(
            entry_id=entry_id,
            artifact_name=artifact_name,
            operation=ActionOperation(operation),
            from_version=from_version,
            to_version=to_version,
            from_hash=from_hash,
            to_hash=to_hash,
            timestamp=datetime.fromisoformat(timestamp_utc.replace("Z", "+00:00")),
            actor=actor,
            reverts_entry_id=reverts_entry_id,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
