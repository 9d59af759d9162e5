"""Content hashing for artifacts and canonical hashing for action log entries.

Artifact digests depend only on file bytes: name, permissions and mtime never
enter the hash.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

_CHUNK_SIZE = 1024 * 1024


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_bytes(data: bytes) -> str:
    """Digest of an in-memory artifact."""
    return sha256_hex(data)


def hash_file(path: Path | str) -> str:
    """Digest of a file on disk, read in chunks.

    Raises ``OSError`` if the file cannot be read.
    """
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of an action log entry (excluding the entry_hash field itself).

    This is the seal that makes each entry tamper-evident.
    """
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
