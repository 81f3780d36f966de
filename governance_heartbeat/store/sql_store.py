"""
SQL Document Store — relational backend for the version-controlled document store.

Each commit runs in one database transaction:

1. Insert the commit row (sequence is unique, so two racing commits cannot
   both claim the same position in the chain)
2. Compare-and-swap every document:
   `UPDATE documents SET ... WHERE path = :path AND revision = :expected`
   (or INSERT when the expected revision is 0)
3. Append every new revision to document_revisions

Any mismatch rolls the whole transaction back, so a commit is all or nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from governance_heartbeat.protocol.schema import utcnow
from governance_heartbeat.store.base import (
    GENESIS_HASH,
    Change,
    Commit,
    StoredDocument,
    WriteConflict,
    check_changes,
    compute_commit_hash,
)
from governance_heartbeat.store.models import Base, CommitDB, DocumentDB, DocumentRevisionDB

logger = logging.getLogger(__name__)

SEQUENCE_RACE_RETRIES = 3


class SqlDocumentStore:
    """
    Version-controlled document store backed by SQLAlchemy.

    Usage:
        store = SqlDocumentStore("sqlite:///governance.db")
        store.initialize()  # Create tables
    """

    def __init__(self, database_url: str) -> None:
        self.engine = create_engine(database_url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        Base.metadata.create_all(self.engine)

    # ── Reads ───────────────────────────────────────────────────

    def read(self, path: str) -> StoredDocument | None:
        with self.SessionLocal() as session:
            row = session.get(DocumentDB, path)
            if row is None:
                return None
            return StoredDocument(
                path=row.path, content=row.content, revision=row.revision, commit_id=row.commit_id
            )

    def list(self, prefix: str = "") -> list[str]:
        with self.SessionLocal() as session:
            stmt = select(DocumentDB.path).order_by(DocumentDB.path.asc())
            if prefix:
                stmt = stmt.where(DocumentDB.path.startswith(prefix, autoescape=True))
            return list(session.execute(stmt).scalars().all())

    def history(self, path: str, limit: int = 50) -> list[Commit]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(CommitDB)
                .join(DocumentRevisionDB, DocumentRevisionDB.commit_id == CommitDB.id)
                .where(DocumentRevisionDB.path == path)
                .order_by(CommitDB.sequence.desc())
                .limit(limit)
            ).scalars().all()
            return [self._to_commit(row) for row in rows]

    def read_revision(self, path: str, revision: int) -> StoredDocument | None:
        with self.SessionLocal() as session:
            row = session.get(DocumentRevisionDB, (path, revision))
            if row is None:
                return None
            return StoredDocument(
                path=row.path, content=row.content, revision=row.revision, commit_id=row.commit_id
            )

    def commit_count(self) -> int:
        with self.SessionLocal() as session:
            return session.execute(select(func.count()).select_from(CommitDB)).scalar() or 0

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
        for attempt in range(SEQUENCE_RACE_RETRIES):
            try:
                return self._commit_once(changes, author, message)
            except IntegrityError:
                # Either a racing commit took our sequence number, or a racing
                # insert created one of our documents. Re-check from scratch.
                logger.debug("Commit race on attempt %d, re-checking", attempt + 1)
                self._raise_if_conflicted(changes)
        raise WriteConflict(changes[0].path, changes[0].expected_revision, -1)

    def _commit_once(self, changes: list[Change], author: str, message: str) -> Commit:
        with self.SessionLocal() as session:
            last = session.execute(
                select(CommitDB).order_by(CommitDB.sequence.desc()).limit(1)
            ).scalar_one_or_none()
            parent_hash = last.commit_hash if last else GENESIS_HASH
            sequence = last.sequence + 1 if last else 0

            commit_id = str(uuid4())
            timestamp = utcnow()
            revisions = {c.path: c.expected_revision + 1 for c in changes}
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

            session.add(CommitDB(
                id=commit_id,
                sequence=sequence,
                parent_hash=parent_hash,
                commit_hash=commit_hash,
                timestamp=timestamp,
                author=author,
                message=message,
                revisions=revisions,
            ))
            session.flush()

            for change in changes:
                new_revision = change.expected_revision + 1
                if change.expected_revision == 0:
                    if session.get(DocumentDB, change.path) is not None:
                        actual = self._current_revision(session, change.path)
                        session.rollback()
                        raise WriteConflict(change.path, 0, actual)
                    session.add(DocumentDB(
                        path=change.path,
                        revision=new_revision,
                        commit_id=commit_id,
                        content=change.content,
                    ))
                    session.flush()
                else:
                    result = session.execute(
                        update(DocumentDB)
                        .where(
                            DocumentDB.path == change.path,
                            DocumentDB.revision == change.expected_revision,
                        )
                        .values(revision=new_revision, commit_id=commit_id, content=change.content)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        actual = self._current_revision(session, change.path)
                        session.rollback()
                        raise WriteConflict(change.path, change.expected_revision, actual)

                session.add(DocumentRevisionDB(
                    path=change.path,
                    revision=new_revision,
                    commit_id=commit_id,
                    content=change.content,
                ))

            session.commit()

        logger.info(
            "Store commit: seq=%d author=%s paths=%s hash=%s",
            sequence, author, ",".join(revisions), commit_hash[:16],
        )
        return Commit(
            id=commit_id,
            sequence=sequence,
            parent_hash=parent_hash,
            commit_hash=commit_hash,
            timestamp=timestamp,
            author=author,
            message=message,
            revisions=revisions,
        )

    # ── Integrity ───────────────────────────────────────────────

    def verify_history(self) -> tuple[bool, int, str]:
        with self.SessionLocal() as session:
            commits = session.execute(
                select(CommitDB).order_by(CommitDB.sequence.asc())
            ).scalars().all()

            for i, row in enumerate(commits):
                expected_parent = commits[i - 1].commit_hash if i else GENESIS_HASH
                if row.parent_hash != expected_parent:
                    return False, i, f"Chain break at sequence {row.sequence}"

                revisions = session.execute(
                    select(DocumentRevisionDB).where(DocumentRevisionDB.commit_id == row.id)
                ).scalars().all()
                contents = {r.path: r.content for r in revisions}
                if set(contents) != set(row.revisions):
                    return False, i, f"Commit {row.sequence} revisions do not match its documents"

                commit = self._to_commit(row)
                recomputed = compute_commit_hash(
                    commit_id=commit.id,
                    sequence=commit.sequence,
                    parent_hash=commit.parent_hash,
                    timestamp=commit.timestamp,
                    author=commit.author,
                    message=commit.message,
                    changes=contents,
                    revisions=commit.revisions,
                )
                if recomputed != commit.commit_hash:
                    return (
                        False, i,
                        f"Hash mismatch at sequence {commit.sequence}: "
                        f"stored={commit.commit_hash[:16]}... "
                        f"computed={recomputed[:16]}...",
                    )

            documents = session.execute(select(DocumentDB)).scalars().all()
            for doc in documents:
                head = session.get(DocumentRevisionDB, (doc.path, doc.revision))
                if head is None or head.content != doc.content:
                    return False, len(commits), f"Document {doc.path} diverges from its history"

            return True, len(commits), f"History verified: {len(commits)} commits, integrity intact"

    # ── Internal ────────────────────────────────────────────────

    def _raise_if_conflicted(self, changes: list[Change]) -> None:
        with self.SessionLocal() as session:
            for change in changes:
                actual = self._current_revision(session, change.path)
                if actual != change.expected_revision:
                    raise WriteConflict(change.path, change.expected_revision, actual)

    @staticmethod
    def _current_revision(session: Any, path: str) -> int:
        revision = session.execute(
            select(DocumentDB.revision).where(DocumentDB.path == path)
        ).scalar_one_or_none()
        return revision or 0

    @staticmethod
    def _to_commit(row: CommitDB) -> Commit:
        timestamp: datetime = row.timestamp
        # SQLite drops tzinfo; all commit timestamps are written in UTC
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        else:
            timestamp = timestamp.astimezone(timezone.utc)
        return Commit(
            id=row.id,
            sequence=row.sequence,
            parent_hash=row.parent_hash,
            commit_hash=row.commit_hash,
            timestamp=timestamp,
            author=row.author,
            message=row.message,
            revisions=dict(row.revisions),
        )
