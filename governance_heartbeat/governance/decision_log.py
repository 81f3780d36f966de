"""
Decision Log — append/update-only record of decisions among real alternatives (EDOs).

Every decision record lives in its own document; the index document maps
each id to that document's path. The two are written in the same store
commit, so after any sequence of successful appends and updates the index
holds exactly the ids for which a record exists.

If that ever stops being true (a record without an index entry, or an
index entry without a record) the log is corrupt. Corruption is detected
on the next read and raised as DecisionLogCorruption; it is never patched
silently and needs manual repair.

Ownership: a record may be updated only by the charter that created it,
and only while its decision thread is open.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from governance_heartbeat.governance.permissions import PermissionEngine, ProtocolAction
from governance_heartbeat.protocol.schema import (
    EDO_INDEX_PATH,
    EDO_RECORD_DIR,
    DecisionDraft,
    DecisionIndex,
    DecisionRecord,
    DecisionStatus,
    edo_record_path,
    utcnow,
)
from governance_heartbeat.store.base import Change, DocumentStore, WriteConflict

logger = logging.getLogger(__name__)


class DecisionLogCorruption(Exception):
    """Raised when the EDO index and the EDO records disagree. Fatal."""

    def __init__(self, orphans: list[str], missing: list[str]) -> None:
        super().__init__(
            f"Decision log corrupt: records without index entry={orphans}, "
            f"index entries without record={missing}. Manual repair required."
        )
        self.orphans = orphans
        self.missing = missing


class UnknownDecision(Exception):
    """Raised when an EDO id is not in the index."""
    pass


class DecisionThreadClosed(Exception):
    """Raised when updating a decision whose thread has been closed."""
    pass


class DecisionLog:
    """
    Append and update EDOs with their index, atomically.

    Usage:
        log = DecisionLog(store, permissions)
        record = log.append_edo("SUSTAINABILITY", draft)
        log.update_edo("SUSTAINABILITY", record.id, revised_draft)
    """

    snapshot_attempts = 5

    def __init__(
        self,
        store: DocumentStore,
        permissions: PermissionEngine,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.permissions = permissions
        self.clock = clock

    # ── Writes ──────────────────────────────────────────────────

    def append_edo(self, caller: str, draft: DecisionDraft) -> DecisionRecord:
        """
        Create a new decision record and index entry in one commit.

        Raises:
            PermissionDenied: caller is not a registered charter.
            WriteConflict: another append claimed the id or moved the index;
                re-read and retry with a fresh id.
            DecisionLogCorruption: index and records already disagree.
        """
        self.permissions.require(caller, ProtocolAction.APPEND_EDO)
        index, index_revision = self.verify()

        edo_id = index.next_id()
        path = edo_record_path(edo_id)
        record = DecisionRecord(
            id=edo_id,
            charter_id=caller,
            alternatives_considered=list(draft.alternatives_considered),
            chosen=draft.chosen,
            rationale=draft.rationale,
            created_at=self.clock(),
        )
        index.entries[edo_id] = path

        self.store.commit(
            [
                Change(path=path, content=record.model_dump(mode="json"), expected_revision=0),
                Change(
                    path=EDO_INDEX_PATH,
                    content=index.model_dump(mode="json"),
                    expected_revision=index_revision,
                ),
            ],
            author=caller,
            message=f"edo {edo_id}: {draft.chosen}",
        )
        logger.info(
            "EDO appended: id=%s charter=%s alternatives=%d",
            edo_id, caller, len(record.alternatives_considered),
        )
        return record

    def update_edo(
        self,
        caller: str,
        edo_id: str,
        draft: DecisionDraft,
        close: bool = False,
    ) -> DecisionRecord:
        """
        Revise an open decision owned by the caller.

        Raises:
            UnknownDecision: id is not in the index.
            PermissionDenied: the record belongs to a different charter.
            DecisionThreadClosed: the decision thread is closed.
            WriteConflict: the record changed since it was read.
        """
        record, revision = self._read_record(edo_id)
        self.permissions.require(
            caller, ProtocolAction.UPDATE_EDO, resource_owner=record.charter_id
        )
        if record.status == DecisionStatus.CLOSED:
            raise DecisionThreadClosed(f"Decision {edo_id} is closed")

        updated = record.model_copy(update={
            "alternatives_considered": list(draft.alternatives_considered),
            "chosen": draft.chosen,
            "rationale": draft.rationale,
            "status": DecisionStatus.CLOSED if close else DecisionStatus.OPEN,
            "updated_at": self.clock(),
        })
        self.store.write(
            edo_record_path(edo_id),
            updated.model_dump(mode="json"),
            expected_revision=revision,
            author=caller,
            message=f"edo {edo_id}: update{' and close' if close else ''}",
        )
        logger.info("EDO updated: id=%s charter=%s closed=%s", edo_id, caller, close)
        return updated

    def close_edo(self, caller: str, edo_id: str) -> DecisionRecord:
        """Close a decision thread without changing its content."""
        record, _ = self._read_record(edo_id)
        draft = DecisionDraft(
            alternatives_considered=record.alternatives_considered,
            chosen=record.chosen,
            rationale=record.rationale,
        )
        return self.update_edo(caller, edo_id, draft, close=True)

    # ── Reads ───────────────────────────────────────────────────

    def get_edo(self, edo_id: str) -> DecisionRecord | None:
        try:
            return self._read_record(edo_id)[0]
        except UnknownDecision:
            return None

    def list_edos(self, charter_id: str | None = None) -> list[DecisionRecord]:
        index, _ = self.verify()
        records = []
        for edo_id in sorted(index.entries):
            doc = self.store.read(index.entries[edo_id])
            if doc is None:
                raise DecisionLogCorruption(orphans=[], missing=[edo_id])
            record = DecisionRecord.model_validate(doc.content)
            if charter_id is None or record.charter_id == charter_id:
                records.append(record)
        return records

    def open_threads(self, charter_id: str) -> list[DecisionRecord]:
        return [r for r in self.list_edos(charter_id) if r.status == DecisionStatus.OPEN]

    # ── Integrity ───────────────────────────────────────────────

    def verify(self) -> tuple[DecisionIndex, int]:
        """
        Load the index and check it against the stored records.

        Returns:
            (index, index_revision)

        Raises:
            DecisionLogCorruption: when the id sets differ.
        """
        index, revision, orphans, missing = self._snapshot()
        if orphans or missing:
            logger.error("Decision log corrupt: orphans=%s missing=%s", orphans, missing)
            raise DecisionLogCorruption(orphans=orphans, missing=missing)
        return index, revision

    def check_consistency(self) -> tuple[bool, str]:
        """Non-raising variant of verify() for audits."""
        index, _, orphans, missing = self._snapshot()
        if not orphans and not missing:
            return True, f"Decision index consistent: {len(index.entries)} records"
        return False, f"Records without index entry: {orphans}; index entries without record: {missing}"

    # ── Internal ────────────────────────────────────────────────

    def _load_index(self) -> tuple[DecisionIndex, int]:
        doc = self.store.read(EDO_INDEX_PATH)
        if doc is None:
            return DecisionIndex(), 0
        return DecisionIndex.model_validate(doc.content), doc.revision

    def _snapshot(self) -> tuple[DecisionIndex, int, list[str], list[str]]:
        """
        Compare the index with the record listing as of one index revision.

        The index and the listing come from separate store reads, so a
        concurrent append can land between them. A mismatch only counts once
        the index revision is unchanged across the comparison; otherwise the
        comparison is repeated against the newer index.

        Returns:
            (index, index_revision, orphans, missing)

        Raises:
            WriteConflict: the index kept moving for every attempt.
        """
        for _ in range(self.snapshot_attempts):
            index, revision = self._load_index()
            orphans, missing = self._compare(index)
            if not orphans and not missing:
                return index, revision, orphans, missing
            _, settled = self._load_index()
            if settled == revision:
                return index, revision, orphans, missing
            logger.debug(
                "EDO index moved during comparison (revision %d → %d), re-reading",
                revision, settled,
            )
        raise WriteConflict(EDO_INDEX_PATH, revision, settled)

    def _compare(self, index: DecisionIndex) -> tuple[list[str], list[str]]:
        stored = {
            path.rsplit("/", 1)[-1].removesuffix(".json"): path
            for path in self.store.list(EDO_RECORD_DIR + "/")
        }
        orphans = sorted(set(stored) - set(index.entries))
        missing = sorted(
            edo_id for edo_id, path in index.entries.items()
            if stored.get(edo_id) != path
        )
        return orphans, missing

    def _read_record(self, edo_id: str) -> tuple[DecisionRecord, int]:
        index, _ = self.verify()
        path = index.entries.get(edo_id)
        if path is None:
            raise UnknownDecision(f"No decision record with id {edo_id}")
        doc = self.store.read(path)
        if doc is None:
            raise DecisionLogCorruption(orphans=[], missing=[edo_id])
        return DecisionRecord.model_validate(doc.content), doc.revision
