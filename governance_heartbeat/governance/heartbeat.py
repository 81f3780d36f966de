"""
Heartbeat Log — one current heartbeat per charter, history via the store.

Each charter overwrites its own heartbeat document once per cycle. Earlier
heartbeats are not lost: every overwrite is a commit, so the history of a
charter's heartbeats is the history of its document.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from governance_heartbeat.governance.permissions import PermissionEngine, ProtocolAction
from governance_heartbeat.protocol.schema import Heartbeat, heartbeat_path
from governance_heartbeat.store.base import Commit, DocumentStore

logger = logging.getLogger(__name__)


class HeartbeatLog:
    """Read and write charter heartbeats."""

    def __init__(self, store: DocumentStore, permissions: PermissionEngine) -> None:
        self.store = store
        self.permissions = permissions

    def read(self, charter_id: str) -> tuple[Heartbeat | None, int]:
        """Current heartbeat and its store revision (0 when none exists)."""
        doc = self.store.read(heartbeat_path(charter_id))
        if doc is None:
            return None, 0
        return Heartbeat.model_validate(doc.content), doc.revision

    def latest(self, charter_id: str) -> Heartbeat | None:
        return self.read(charter_id)[0]

    def latest_all(self, charter_ids: Iterable[str]) -> dict[str, Heartbeat | None]:
        return {cid: self.latest(cid) for cid in charter_ids}

    def history(self, charter_id: str, limit: int = 20) -> list[Heartbeat]:
        """Previous heartbeats for a charter, newest first."""
        path = heartbeat_path(charter_id)
        beats = []
        for commit in self.store.history(path, limit=limit):
            doc = self.store.read_revision(path, commit.revisions[path])
            if doc is not None:
                beats.append(Heartbeat.model_validate(doc.content))
        return beats

    def since(self, charter_id: str, cutoff: datetime, batch: int = 50) -> list[Heartbeat]:
        """Every heartbeat newer than `cutoff`, newest first, however many there are."""
        limit = batch
        while True:
            beats = self.history(charter_id, limit=limit)
            recent = [hb for hb in beats if hb.timestamp > cutoff]
            if len(recent) < len(beats) or len(beats) < limit:
                return recent
            limit *= 2

    def write(self, caller: str, heartbeat: Heartbeat, expected_revision: int) -> Commit:
        """
        Overwrite a charter's heartbeat.

        Raises:
            PermissionDenied: caller does not own the heartbeat.
            WriteConflict: the heartbeat changed since `expected_revision`.
        """
        self.permissions.require(
            caller, ProtocolAction.WRITE_HEARTBEAT, resource_owner=heartbeat.charter_id
        )
        commit = self.store.write(
            heartbeat_path(heartbeat.charter_id),
            heartbeat.model_dump(mode="json"),
            expected_revision=expected_revision,
            author=caller,
            message=self._message(heartbeat),
        )
        logger.info(
            "Heartbeat written: charter=%s decision=%s reason=%s outcome=%s",
            heartbeat.charter_id,
            heartbeat.decision.value,
            heartbeat.no_op_reason.value if heartbeat.no_op_reason else "-",
            heartbeat.outcome.value,
        )
        return commit

    @staticmethod
    def _message(heartbeat: Heartbeat) -> str:
        if heartbeat.no_op_reason is not None:
            return f"heartbeat {heartbeat.charter_id}: no-op ({heartbeat.no_op_reason.value})"
        return f"heartbeat {heartbeat.charter_id}: {heartbeat.decision.value} ({heartbeat.outcome.value})"
