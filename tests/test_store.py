"""
Tests for the version-controlled document stores.

Validates, for both the file and SQL backends:
- Compare-and-swap writes and conflict detection
- All-or-nothing multi-document commits
- Per-document history and historical reads
- Hash-chain verification and tamper detection
"""

from __future__ import annotations

import json

import pytest
from sqlalchemy import update

from governance_heartbeat.store.base import GENESIS_HASH, Change, WriteConflict
from governance_heartbeat.store.file_store import FileDocumentStore
from governance_heartbeat.store.models import DocumentRevisionDB
from governance_heartbeat.store.sql_store import SqlDocumentStore


class StoreContract:
    """Behaviour every DocumentStore backend must share."""

    store = None

    def test_read_missing_returns_none(self):
        assert self.store.read("gate/budget_gate.json") is None

    def test_write_then_read(self):
        commit = self.store.write("a.json", {"x": 1}, expected_revision=0, author="GOVERN")
        doc = self.store.read("a.json")
        assert doc.content == {"x": 1}
        assert doc.revision == 1
        assert doc.commit_id == commit.id
        assert commit.parent_hash == GENESIS_HASH
        assert commit.revisions == {"a.json": 1}

    def test_stale_revision_conflicts(self):
        self.store.write("a.json", {"x": 1}, expected_revision=0, author="GOVERN")
        self.store.write("a.json", {"x": 2}, expected_revision=1, author="GOVERN")
        with pytest.raises(WriteConflict) as exc:
            self.store.write("a.json", {"x": 3}, expected_revision=1, author="GOVERN")
        assert exc.value.actual_revision == 2
        assert self.store.read("a.json").content == {"x": 2}

    def test_create_over_existing_conflicts(self):
        self.store.write("a.json", {"x": 1}, expected_revision=0, author="GOVERN")
        with pytest.raises(WriteConflict):
            self.store.write("a.json", {"x": 9}, expected_revision=0, author="SUSTAINABILITY")

    def test_multi_document_commit_is_all_or_nothing(self):
        self.store.write("b.json", {"v": 1}, expected_revision=0, author="GOVERN")
        with pytest.raises(WriteConflict):
            self.store.commit(
                [
                    Change(path="a.json", content={"new": True}, expected_revision=0),
                    Change(path="b.json", content={"v": 2}, expected_revision=5),
                ],
                author="GOVERN",
            )
        assert self.store.read("a.json") is None
        assert self.store.read("b.json").content == {"v": 1}

        commit = self.store.commit(
            [
                Change(path="a.json", content={"new": True}, expected_revision=0),
                Change(path="b.json", content={"v": 2}, expected_revision=1),
            ],
            author="GOVERN",
        )
        assert commit.revisions == {"a.json": 1, "b.json": 2}
        assert self.store.read("a.json").commit_id == self.store.read("b.json").commit_id

    def test_duplicate_paths_rejected(self):
        with pytest.raises(ValueError):
            self.store.commit(
                [
                    Change(path="a.json", content={}, expected_revision=0),
                    Change(path="a.json", content={}, expected_revision=0),
                ],
                author="GOVERN",
            )

    def test_history_and_read_revision(self):
        for i in range(3):
            self.store.write("a.json", {"n": i}, expected_revision=i, author="GOVERN")
        self.store.write("other.json", {}, expected_revision=0, author="GOVERN")

        history = self.store.history("a.json")
        assert [c.revisions["a.json"] for c in history] == [3, 2, 1]
        assert history[0].sequence > history[-1].sequence
        assert self.store.read_revision("a.json", 2).content == {"n": 1}
        assert self.store.read_revision("a.json", 9) is None
        assert len(self.store.history("a.json", limit=1)) == 1

    def test_list_by_prefix(self):
        self.store.write("edo/records/edo-000001.json", {}, expected_revision=0, author="X")
        self.store.write("edo/index.json", {}, expected_revision=0, author="X")
        self.store.write("heartbeats/govern.json", {}, expected_revision=0, author="X")
        assert self.store.list("edo/records/") == ["edo/records/edo-000001.json"]
        assert len(self.store.list()) == 3

    def test_commits_chain(self):
        first = self.store.write("a.json", {"n": 0}, expected_revision=0, author="GOVERN")
        second = self.store.write("b.json", {"n": 0}, expected_revision=0, author="GOVERN")
        assert second.parent_hash == first.commit_hash
        assert second.sequence == first.sequence + 1

    def test_verify_history_valid(self):
        self.store.write("a.json", {"n": 0}, expected_revision=0, author="GOVERN")
        self.store.write("a.json", {"n": 1}, expected_revision=1, author="GOVERN")
        is_valid, checked, message = self.store.verify_history()
        assert is_valid, message
        assert checked == 2

    def test_verify_empty_history(self):
        is_valid, checked, _ = self.store.verify_history()
        assert is_valid
        assert checked == 0


class TestFileDocumentStore(StoreContract):

    @pytest.fixture(autouse=True)
    def _store(self, tmp_path):
        self.root = tmp_path / "governance"
        self.store = FileDocumentStore(self.root)

    def test_rejects_escaping_paths(self):
        with pytest.raises(ValueError):
            self.store.write("../outside.json", {}, expected_revision=0, author="GOVERN")
        with pytest.raises(ValueError):
            self.store.write("/abs.json", {}, expected_revision=0, author="GOVERN")

    def test_tampered_log_detected(self):
        self.store.write("a.json", {"n": 0}, expected_revision=0, author="GOVERN")
        self.store.write("a.json", {"n": 1}, expected_revision=1, author="GOVERN")

        log_path = self.root / ".history" / "commits.jsonl"
        lines = log_path.read_text(encoding="utf-8").splitlines()
        first = json.loads(lines[0])
        first["author"] = "SUSTAINABILITY"
        lines[0] = json.dumps(first, sort_keys=True)
        log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        is_valid, position, message = self.store.verify_history()
        assert not is_valid
        assert position == 0
        assert "Hash mismatch" in message

    def test_tampered_document_detected(self):
        self.store.write("a.json", {"n": 0}, expected_revision=0, author="GOVERN")
        doc_file = self.root / "docs" / "a.json"
        envelope = json.loads(doc_file.read_text(encoding="utf-8"))
        envelope["content"] = {"n": 42}
        doc_file.write_text(json.dumps(envelope), encoding="utf-8")

        is_valid, _, message = self.store.verify_history()
        assert not is_valid
        assert "diverges" in message

    def test_interrupted_commit_rolled_forward(self, monkeypatch):
        """A commit whose journal was written is completed on reopen."""
        self.store.write("b.json", {"v": 1}, expected_revision=0, author="GOVERN")

        def crash(store, record):
            raise OSError("simulated crash")

        monkeypatch.setattr(FileDocumentStore, "_apply", crash)
        with pytest.raises(OSError):
            self.store.commit(
                [
                    Change(path="a.json", content={"new": True}, expected_revision=0),
                    Change(path="b.json", content={"v": 2}, expected_revision=1),
                ],
                author="GOVERN",
            )
        monkeypatch.undo()
        assert (self.root / ".history" / "pending.json").exists()

        reopened = FileDocumentStore(self.root)
        assert reopened.read("a.json").content == {"new": True}
        assert reopened.read("b.json").revision == 2
        assert not (self.root / ".history" / "pending.json").exists()
        assert reopened.verify_history()[0]

    def test_torn_journal_discarded(self):
        self.store.write("a.json", {"n": 0}, expected_revision=0, author="GOVERN")
        (self.root / ".history" / "pending.json").write_text("{\"id\": ", encoding="utf-8")

        reopened = FileDocumentStore(self.root)
        assert reopened.read("a.json").content == {"n": 0}
        assert not (self.root / ".history" / "pending.json").exists()
        is_valid, checked, _ = reopened.verify_history()
        assert is_valid
        assert checked == 1


class TestSqlDocumentStore(StoreContract):

    @pytest.fixture(autouse=True)
    def _store(self, tmp_path):
        self.store = SqlDocumentStore(f"sqlite:///{tmp_path / 'governance.db'}")
        self.store.initialize()

    def test_commit_count(self):
        self.store.write("a.json", {"n": 0}, expected_revision=0, author="GOVERN")
        assert self.store.commit_count() == 1

    def test_tampered_revision_detected(self):
        self.store.write("a.json", {"n": 0}, expected_revision=0, author="GOVERN")
        self.store.write("a.json", {"n": 1}, expected_revision=1, author="GOVERN")

        with self.store.SessionLocal() as session:
            session.execute(
                update(DocumentRevisionDB)
                .where(DocumentRevisionDB.path == "a.json", DocumentRevisionDB.revision == 1)
                .values(content={"n": 99})
            )
            session.commit()

        is_valid, position, message = self.store.verify_history()
        assert not is_valid
        assert position == 0
        assert "Hash mismatch" in message

    def test_timestamps_are_utc(self):
        commit = self.store.write("a.json", {"n": 0}, expected_revision=0, author="GOVERN")
        stored = self.store.history("a.json")[0]
        assert stored.timestamp == commit.timestamp
        assert stored.timestamp.tzinfo is not None
