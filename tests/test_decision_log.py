"""
Tests for the Decision Log (EDO records and index).

Validates:
- Record and index are written in one commit
- Monotonic ids
- Creator-only updates and closed threads
- Index/record mismatch is detected, never patched
"""

from __future__ import annotations

import pytest

from governance_heartbeat.governance.decision_log import (
    DecisionLogCorruption,
    DecisionThreadClosed,
    UnknownDecision,
)
from governance_heartbeat.governance.permissions import PermissionDenied
from governance_heartbeat.protocol.schema import (
    EDO_INDEX_PATH,
    DecisionDraft,
    DecisionStatus,
    edo_record_path,
)
from governance_heartbeat.store.file_store import FileDocumentStore

from fakes import build_services


def _draft(chosen: str = "cheap model") -> DecisionDraft:
    return DecisionDraft(
        alternatives_considered=["cheap model", "strong model"],
        chosen=chosen,
        rationale="burn rate is high",
    )


class TestDecisionLog:

    @pytest.fixture(autouse=True)
    def _services(self, tmp_path):
        self.store = FileDocumentStore(tmp_path)
        self.log = build_services(self.store).decisions

    def test_append_writes_record_and_index_together(self):
        record = self.log.append_edo("SUSTAINABILITY", _draft())
        assert record.id == "edo-000001"
        assert record.charter_id == "SUSTAINABILITY"
        assert record.status == DecisionStatus.OPEN

        index_commit = self.store.history(EDO_INDEX_PATH)[0]
        record_commit = self.store.history(edo_record_path(record.id))[0]
        assert index_commit.id == record_commit.id

    def test_ids_are_monotonic(self):
        first = self.log.append_edo("SUSTAINABILITY", _draft())
        second = self.log.append_edo("GOVERN", _draft())
        assert (first.id, second.id) == ("edo-000001", "edo-000002")

    def test_list_and_filter(self):
        self.log.append_edo("SUSTAINABILITY", _draft())
        self.log.append_edo("GOVERN", _draft())
        assert len(self.log.list_edos()) == 2
        assert [r.charter_id for r in self.log.list_edos("GOVERN")] == ["GOVERN"]

    def test_unknown_charter_cannot_append(self):
        with pytest.raises(PermissionDenied):
            self.log.append_edo("ROGUE", _draft())

    def test_creator_updates(self):
        record = self.log.append_edo("SUSTAINABILITY", _draft())
        updated = self.log.update_edo("SUSTAINABILITY", record.id, _draft("strong model"))
        assert updated.chosen == "strong model"
        assert updated.updated_at is not None
        assert self.log.get_edo(record.id).chosen == "strong model"

    def test_other_charter_cannot_update(self):
        record = self.log.append_edo("SUSTAINABILITY", _draft())
        with pytest.raises(PermissionDenied):
            self.log.update_edo("GOVERN", record.id, _draft("strong model"))
        assert self.log.get_edo(record.id).chosen == "cheap model"

    def test_closed_thread_rejects_updates(self):
        record = self.log.append_edo("SUSTAINABILITY", _draft())
        closed = self.log.close_edo("SUSTAINABILITY", record.id)
        assert closed.status == DecisionStatus.CLOSED
        assert self.log.open_threads("SUSTAINABILITY") == []
        with pytest.raises(DecisionThreadClosed):
            self.log.update_edo("SUSTAINABILITY", record.id, _draft("strong model"))

    def test_unknown_id(self):
        assert self.log.get_edo("edo-000099") is None
        with pytest.raises(UnknownDecision):
            self.log.update_edo("SUSTAINABILITY", "edo-000099", _draft())

    def test_consistent_log(self):
        self.log.append_edo("SUSTAINABILITY", _draft())
        ok, message = self.log.check_consistency()
        assert ok, message

    def test_orphan_record_is_corruption(self):
        self.log.append_edo("SUSTAINABILITY", _draft())
        self.store.write(
            edo_record_path("edo-000005"), {"id": "edo-000005"}, expected_revision=0, author="X"
        )
        with pytest.raises(DecisionLogCorruption) as exc:
            self.log.append_edo("SUSTAINABILITY", _draft())
        assert exc.value.orphans == ["edo-000005"]
        assert not self.log.check_consistency()[0]

    def test_index_entry_without_record_is_corruption(self):
        record = self.log.append_edo("SUSTAINABILITY", _draft())
        index = self.store.read(EDO_INDEX_PATH)
        entries = dict(index.content["entries"], **{"edo-000002": edo_record_path("edo-000002")})
        self.store.write(
            EDO_INDEX_PATH, {"entries": entries}, expected_revision=index.revision, author="X"
        )
        with pytest.raises(DecisionLogCorruption) as exc:
            self.log.list_edos()
        assert exc.value.missing == ["edo-000002"]
        with pytest.raises(DecisionLogCorruption):
            self.log.get_edo(record.id)


class InterleavedStore:
    """Delegates to a store, running `before_list` once ahead of the first list()."""

    def __init__(self, inner, before_list):
        self.inner = inner
        self.before_list = before_list

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def list(self, prefix=""):
        if self.before_list is not None:
            hook, self.before_list = self.before_list, None
            hook()
        return self.inner.list(prefix)


class TestConcurrentAppends:

    @pytest.fixture(autouse=True)
    def _two_handles(self, tmp_path):
        self.other = build_services(FileDocumentStore(tmp_path)).decisions
        self.store = InterleavedStore(
            FileDocumentStore(tmp_path),
            lambda: self.other.append_edo("GOVERN", _draft("strong model")),
        )
        self.log = build_services(self.store).decisions

    def test_append_landing_between_index_read_and_listing_is_not_corruption(self):
        record = self.log.append_edo("SUSTAINABILITY", _draft())
        assert record.id == "edo-000002"
        assert [r.charter_id for r in self.log.list_edos()] == ["GOVERN", "SUSTAINABILITY"]
        assert self.log.check_consistency()[0]

    def test_listing_sees_a_settled_index(self):
        records = self.log.list_edos()
        assert [r.id for r in records] == ["edo-000001"]

    def test_real_mismatch_still_detected_after_settling(self):
        self.store.before_list = None
        self.store.inner.write(
            edo_record_path("edo-000009"), {"id": "edo-000009"}, expected_revision=0, author="X"
        )
        with pytest.raises(DecisionLogCorruption) as exc:
            self.log.append_edo("SUSTAINABILITY", _draft())
        assert exc.value.orphans == ["edo-000009"]
