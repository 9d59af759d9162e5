"""In-memory table of tracked artifact entries, keyed by name."""

from __future__ import annotations

import threading
from datetime import datetime

from buildtrail.models.artifacts import ArtifactEntry


class ArtifactTable:
    """Thread-safe mapping of artifact name to its current ``ArtifactEntry``.

    Entries are immutable; writers swap in a replacement.  ``touch`` only
    moves ``last_scanned`` on whatever entry is current, so a scan working on
    an older snapshot never undoes a concurrent sync.
    """

    def __init__(self, entries: list[ArtifactEntry] | None = None) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, ArtifactEntry] = {}
        for entry in entries or []:
            self._entries[entry.name] = entry

    def get(self, name: str) -> ArtifactEntry | None:
        with self._lock:
            return self._entries.get(name)

    def put(self, entry: ArtifactEntry) -> None:
        with self._lock:
            self._entries[entry.name] = entry

    def remove(self, name: str) -> ArtifactEntry | None:
        with self._lock:
            return self._entries.pop(name, None)

    def touch(self, name: str, scanned_at: datetime) -> None:
        with self._lock:
            entry = self._entries.get(name)
            if entry is not None:
                self._entries[name] = entry.model_copy(update={"last_scanned": scanned_at})

    def snapshot(self) -> list[ArtifactEntry]:
        with self._lock:
            return list(self._entries.values())

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
