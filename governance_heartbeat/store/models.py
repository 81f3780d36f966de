"""
Document Store — SQLAlchemy models for the relational store backend.

Three tables:

1. documents           — current revision of every document (compare-and-swap target)
2. document_revisions  — every revision ever written (history)
3. commits             — hash-chained commit log

`documents` rows are updated in place; `document_revisions` and `commits`
are append-only.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all store models."""
    pass


class CommitDB(Base):
    """A single hash-chained commit. Append-only."""

    __tablename__ = "commits"

    id = Column(String(36), primary_key=True)
    sequence = Column(
        Integer, nullable=False, unique=True, index=True,
        comment="Monotonically increasing commit sequence",
    )
    parent_hash = Column(String(64), nullable=False)
    commit_hash = Column(String(64), nullable=False, unique=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    author = Column(String(100), nullable=False, comment="Charter ID that made the commit")
    message = Column(Text, nullable=False, default="")
    revisions = Column(JSON, nullable=False, comment="path -> revision written by this commit")

    def __repr__(self) -> str:
        return f"<Commit seq={self.sequence} author={self.author} hash={self.commit_hash[:12]}...>"


class DocumentDB(Base):
    """The current revision of a document."""

    __tablename__ = "documents"

    path = Column(String(255), primary_key=True)
    revision = Column(Integer, nullable=False)
    commit_id = Column(String(36), ForeignKey("commits.id"), nullable=False)
    content = Column(JSON, nullable=False)


class DocumentRevisionDB(Base):
    """Every revision of every document. Append-only."""

    __tablename__ = "document_revisions"

    path = Column(String(255), primary_key=True)
    revision = Column(Integer, primary_key=True)
    commit_id = Column(String(36), ForeignKey("commits.id"), nullable=False)
    content = Column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_document_revisions_commit", "commit_id"),
    )
