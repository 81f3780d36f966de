"""
File Document Store — JSON documents in a directory with a hash-chained commit log.

Layout under the store root:

    docs/<path>                 current document envelope
                                {"revision": n, "commit_id": ..., "content": {...}}
    .history/commits.jsonl      append-only commit log (one JSON object per line,
                                including the full content of every change)
    .history/pending.json       commit journal, present only while a commit is
                                being applied
    .history/lock               advisory lock file (fcntl.flock)

A commit is applied as: journal → documents → log line → journal removed.
A crash anywhere in between leaves the journal behind; the next store
operation finds it and rolls the commit forward, so the documents of one
commit are never observed half-applied after recovery.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Any, Iterator
from uuid import uuid4

from governance_heartbeat.protocol.schema import utcnow
from governance_heartbeat.store.base import (
    GENESIS_HASH,
    Change,
    Commit,
    StoreCorruption,
    StoredDocument,
    WriteConflict,
    check_changes,
    compute_commit_hash,
)

logger = logging.getLogger(__name__)


class FileDocumentStore:
    """
    Version-controlled document store backed by the local filesystem.

    Usage:
        store = FileDocumentStore(".governance")
        commit = store.write("gate/budget_gate.json", {...}, expected_revision=0,
                             author="GOVERN")
        doc = store.read("gate/budget_gate.json")
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.docs_dir = self.root / "docs"
        self.history_dir = self.root / ".history"
        self.log_path = self.history_dir / "commits.jsonl"
        self.journal_path = self.history_dir / "pending.json"
        self.lock_path = self.history_dir / "lock"

        self.docs_dir.mkdir(parents=True, exist_ok=True)
        self.history_dir.mkdir(parents=True, exist_ok=True)
        self.lock_path.touch(exist_ok=True)
        self.recover()

    # ── Reads ───────────────────────────────────────────────────

    def read(self, path: str) -> StoredDocument | None:
        with self._locked():
            self._recover_locked()
            return self._read_envelope(path)

    def list(self, prefix: str = "") -> list[str]:
        with self._locked():
            self._recover_locked()
            paths = []
            for file in self.docs_dir.rglob("*"):
                if file.is_file() and not file.name.startswith(".tmp-"):
                    rel = file.relative_to(self.docs_dir).as_posix()
                    if rel.startswith(prefix):
                        paths.append(rel)
            return sorted(paths)

    def history(self, path: str, limit: int = 50) -> list[Commit]:
        self._check_path(path)
        with self._locked():
            self._recover_locked()
            records = self._load_log()
        touching = [
            Commit.from_dict(r) for r in reversed(records) if path in r["revisions"]
        ]
        return touching[:limit]

    def read_revision(self, path: str, revision: int) -> StoredDocument | None:
        self._check_path(path)
        with self._locked():
            self._recover_locked()
            records = self._load_log()
        for record in records:
            if record["revisions"].get(path) == revision:
                return StoredDocument(
                    path=path,
                    content=record["changes"][path],
                    revision=revision,
                    commit_id=record["id"],
                )
        return None

    # ── Writes ──────────────────────────────────────────────────

    def write(
        self,
        path: str,
        content: dict[str, Any],
        expected_revision: int,
        author: str,
        message: str = "",
    ) -> Commit:
        return self.commit(
            [Change(path=path, content=content, expected_revision=expected_revision)],
            author=author,
            message=message or f"write {path}",
        )

    def commit(self, changes: list[Change], author: str, message: str = "") -> Commit:
        check_changes(changes)
        for change in changes:
            self._check_path(change.path)

        with self._locked():
            self._recover_locked()

            # Compare-and-swap on every document in the change set
            revisions: dict[str, int] = {}
            for change in changes:
                current = self._read_envelope(change.path)
                actual = current.revision if current else 0
                if actual != change.expected_revision:
                    raise WriteConflict(change.path, change.expected_revision, actual)
                revisions[change.path] = actual + 1

            records = self._load_log()
            parent_hash = records[-1]["commit_hash"] if records else GENESIS_HASH
            sequence = records[-1]["sequence"] + 1 if records else 0
            commit_id = str(uuid4())
            timestamp = utcnow()
            contents = {c.path: c.content for c in changes}

            commit_hash = compute_commit_hash(
                commit_id=commit_id,
                sequence=sequence,
                parent_hash=parent_hash,
                timestamp=timestamp,
                author=author,
                message=message,
                changes=contents,
                revisions=revisions,
            )
            commit = Commit(
                id=commit_id,
                sequence=sequence,
                parent_hash=parent_hash,
                commit_hash=commit_hash,
                timestamp=timestamp,
                author=author,
                message=message,
                revisions=revisions,
            )
            record = {**commit.to_dict(), "changes": contents}

            self._atomic_write(self.journal_path, record)
            self._apply(record)
            self.journal_path.unlink()

        logger.info(
            "Store commit: seq=%d author=%s paths=%s hash=%s",
            sequence, author, ",".join(revisions), commit_hash[:16],
        )
        return commit

    # ── Integrity ───────────────────────────────────────────────

    def verify_history(self) -> tuple[bool, int, str]:
        with self._locked():
            self._recover_locked()
            records = self._load_log()

            latest: dict[str, tuple[int, dict[str, Any]]] = {}
            for i, record in enumerate(records):
                expected_parent = records[i - 1]["commit_hash"] if i else GENESIS_HASH
                if record["parent_hash"] != expected_parent:
                    return False, i, f"Chain break at sequence {record['sequence']}"
                if record["sequence"] != i:
                    return False, i, f"Sequence gap at position {i}"

                commit = Commit.from_dict(record)
                recomputed = compute_commit_hash(
                    commit_id=commit.id,
                    sequence=commit.sequence,
                    parent_hash=commit.parent_hash,
                    timestamp=commit.timestamp,
                    author=commit.author,
                    message=commit.message,
                    changes=record["changes"],
                    revisions=commit.revisions,
                )
                if recomputed != commit.commit_hash:
                    return (
                        False, i,
                        f"Hash mismatch at sequence {commit.sequence}: "
                        f"stored={commit.commit_hash[:16]}... "
                        f"computed={recomputed[:16]}...",
                    )
                for path, revision in commit.revisions.items():
                    latest[path] = (revision, record["changes"][path])

            # Working documents must match the head of the log
            for path, (revision, content) in latest.items():
                current = self._read_envelope(path)
                if current is None or current.revision != revision or current.content != content:
                    return False, len(records), f"Document {path} diverges from commit log"

            return True, len(records), f"History verified: {len(records)} commits, integrity intact"

    def recover(self) -> bool:
        """Roll forward an interrupted commit, if any. Returns True if one was found."""
        with self._locked():
            return self._recover_locked()

    # ── Internal ────────────────────────────────────────────────

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with open(self.lock_path, "a+") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _recover_locked(self) -> bool:
        if not self.journal_path.exists():
            return False
        try:
            record = json.loads(self.journal_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            # The journal itself was torn: nothing was applied yet
            logger.warning("Discarding torn commit journal at %s", self.journal_path)
            self.journal_path.unlink()
            return True

        self._truncate_partial_log_line()
        logged = any(r["id"] == record["id"] for r in self._load_log())
        if logged:
            # Documents are written before the log line, so they are complete
            self.journal_path.unlink()
        else:
            self._apply(record)
            self.journal_path.unlink()
        logger.warning(
            "Recovered interrupted commit: seq=%d id=%s", record["sequence"], record["id"][:8]
        )
        return True

    def _apply(self, record: dict[str, Any]) -> None:
        for path, content in record["changes"].items():
            envelope = {
                "revision": record["revisions"][path],
                "commit_id": record["id"],
                "content": content,
            }
            self._atomic_write(self._doc_file(path), envelope)
        with open(self.log_path, "a", encoding="utf-8") as log:
            log.write(json.dumps(record, sort_keys=True, default=str) + "\n")
            log.flush()
            os.fsync(log.fileno())

    def _read_envelope(self, path: str) -> StoredDocument | None:
        file = self._doc_file(path)
        if not file.exists():
            return None
        try:
            envelope = json.loads(file.read_text(encoding="utf-8"))
            return StoredDocument(
                path=path,
                content=envelope["content"],
                revision=envelope["revision"],
                commit_id=envelope["commit_id"],
            )
        except (json.JSONDecodeError, KeyError) as e:
            raise StoreCorruption(f"Unreadable document {path}: {e}") from e

    def _load_log(self) -> list[dict[str, Any]]:
        if not self.log_path.exists():
            return []
        records = []
        with open(self.log_path, encoding="utf-8") as log:
            for lineno, line in enumerate(log, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError as e:
                    raise StoreCorruption(
                        f"Unreadable commit log line {lineno}: {e}"
                    ) from e
        return records

    def _truncate_partial_log_line(self) -> None:
        if not self.log_path.exists():
            return
        data = self.log_path.read_bytes()
        if data and not data.endswith(b"\n"):
            keep = data.rfind(b"\n") + 1
            with open(self.log_path, "r+b") as log:
                log.truncate(keep)
            logger.warning("Truncated partial commit log line")

    def _doc_file(self, path: str) -> Path:
        return self.docs_dir.joinpath(*PurePosixPath(path).parts)

    @staticmethod
    def _check_path(path: str) -> None:
        parts = PurePosixPath(path).parts
        if not parts or path.startswith("/") or ".." in parts:
            raise ValueError(f"Invalid document path: {path!r}")

    @staticmethod
    def _atomic_write(target: Path, payload: dict[str, Any]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, sort_keys=True, indent=2, default=str)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
