"""
Document Store — the version-controlled persistence contract.

Every state mutation of the heartbeat protocol is a commit against a
document store. A store provides:

- read-latest          — `read(path)` returns the current document or None
- write-with-conflict  — `write(path, content, expected_revision)` is a
                         compare-and-swap; a stale `expected_revision`
                         raises WriteConflict (optimistic concurrency)
- atomic multi-write   — `commit(changes)` applies several documents in one
                         commit, all or nothing
- history              — `history(path)` and `read_revision(path, n)`

Commits are hash-chained: each commit's hash covers its parent's hash and
the canonical JSON of its changes, so any retroactive edit is detectable
by `verify_history()`.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

GENESIS_HASH = "0" * 64  # Parent hash of the first commit in a store


class StoreError(Exception):
    """Base class for document store failures."""
    pass


class WriteConflict(StoreError):
    """Raised when a write races another commit on the same document."""

    def __init__(self, path: str, expected_revision: int, actual_revision: int) -> None:
        super().__init__(
            f"Write conflict on {path}: expected revision {expected_revision}, "
            f"store is at revision {actual_revision}"
        )
        self.path = path
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision


class StoreCorruption(StoreError):
    """Raised when store metadata is unreadable or inconsistent."""
    pass


@dataclass(frozen=True)
class StoredDocument:
    """A document as read from the store."""

    path: str
    content: dict[str, Any]
    revision: int
    commit_id: str


@dataclass(frozen=True)
class Change:
    """One document write within a commit."""

    path: str
    content: dict[str, Any]
    expected_revision: int  # 0 means the document must not exist yet


@dataclass(frozen=True)
class Commit:
    """An individually atomic, hash-chained store commit."""

    id: str
    sequence: int
    parent_hash: str
    commit_hash: str
    timestamp: datetime
    author: str
    message: str
    revisions: dict[str, int] = field(default_factory=dict)  # path -> new revision

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "parent_hash": self.parent_hash,
            "commit_hash": self.commit_hash,
            "timestamp": self.timestamp.isoformat(),
            "author": self.author,
            "message": self.message,
            "revisions": dict(self.revisions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Commit:
        return cls(
            id=data["id"],
            sequence=data["sequence"],
            parent_hash=data["parent_hash"],
            commit_hash=data["commit_hash"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            author=data["author"],
            message=data["message"],
            revisions=dict(data.get("revisions", {})),
        )


def canonical_json(value: Any) -> str:
    """Stable JSON serialization used for hashing."""
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))


def compute_commit_hash(
    commit_id: str,
    sequence: int,
    parent_hash: str,
    timestamp: datetime,
    author: str,
    message: str,
    changes: dict[str, dict[str, Any]],
    revisions: dict[str, int],
) -> str:
    """
    Compute the SHA-256 hash for a commit.

    Hash = SHA-256(parent_hash || canonical_json(commit_fields))
    """
    hashable = {
        "id": commit_id,
        "sequence": sequence,
        "parent_hash": parent_hash,
        "timestamp": timestamp.isoformat(),
        "author": author,
        "message": message,
        "changes": changes,
        "revisions": revisions,
    }
    return hashlib.sha256(
        (parent_hash + canonical_json(hashable)).encode("utf-8")
    ).hexdigest()


class DocumentStore(Protocol):
    """Protocol for version-controlled document store backends."""

    def read(self, path: str) -> StoredDocument | None:
        """Return the latest committed document, or None if it does not exist."""
        ...

    def write(
        self,
        path: str,
        content: dict[str, Any],
        expected_revision: int,
        author: str,
        message: str = "",
    ) -> Commit:
        """Replace a whole document. Raises WriteConflict on a stale revision."""
        ...

    def commit(self, changes: list[Change], author: str, message: str = "") -> Commit:
        """Apply several document writes atomically in a single commit."""
        ...

    def list(self, prefix: str = "") -> list[str]:
        """List document paths under a prefix."""
        ...

    def history(self, path: str, limit: int = 50) -> list[Commit]:
        """Commits that touched a document, newest first."""
        ...

    def read_revision(self, path: str, revision: int) -> StoredDocument | None:
        """Return a historical revision of a document."""
        ...

    def verify_history(self) -> tuple[bool, int, str]:
        """Walk the commit chain. Returns (is_valid, commits_checked, message)."""
        ...


def check_changes(changes: list[Change]) -> None:
    """Reject empty or self-overlapping change sets."""
    if not changes:
        raise ValueError("A commit needs at least one change")
    paths = [c.path for c in changes]
    if len(set(paths)) != len(paths):
        raise ValueError(f"Duplicate paths in one commit: {paths}")
    for change in changes:
        if change.expected_revision < 0:
            raise ValueError(f"Negative expected revision for {change.path}")
