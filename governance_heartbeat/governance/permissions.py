"""
Permission Enforcement — role-based checks at the protocol's write boundaries.

The budget gate has exactly one writer: the charter holding the gate-owner
role. That rule is enforced here, at the write API, rather than by
scheduling or convention. A second charter that believes it owns the gate
is rejected at write time, and an engine configured with two gate owners
refuses to start.

Actions are classified as:

- AUTHORIZED: the calling charter's role permits the action
- FORBIDDEN:  the action is denied; callers raise PermissionDenied
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from governance_heartbeat.protocol.schema import CharterDefinition, CharterRole

logger = logging.getLogger(__name__)


class ProtocolAction(str, Enum):
    """Protocol operations subject to a permission check."""

    READ_GATE = "read_gate"
    WRITE_GATE = "write_gate"
    WRITE_HEARTBEAT = "write_heartbeat"
    APPEND_EDO = "append_edo"
    UPDATE_EDO = "update_edo"


class PermissionDecision(str, Enum):
    """Result of a permission check."""

    AUTHORIZED = "authorized"
    FORBIDDEN = "forbidden"


@dataclass
class PermissionCheckResult:
    """Result of checking an action against the caller's role."""

    decision: PermissionDecision
    action: ProtocolAction
    charter_id: str
    role: CharterRole | None
    reason: str

    @property
    def is_allowed(self) -> bool:
        return self.decision == PermissionDecision.AUTHORIZED


class PermissionDenied(Exception):
    """Raised when a charter attempts an action its role does not permit."""

    def __init__(self, result: PermissionCheckResult) -> None:
        super().__init__(result.reason)
        self.result = result


class PermissionEngine:
    """
    Central permission enforcement engine.

    Holds the authoritative charter → role assignment. Exactly one charter
    may hold the gate-owner role; the constructor rejects any other
    configuration.
    """

    def __init__(self, roles: dict[str, CharterRole]) -> None:
        owners = sorted(cid for cid, role in roles.items() if role == CharterRole.GATE_OWNER)
        if len(owners) != 1:
            raise ValueError(
                f"Exactly one charter must hold the gate-owner role, found {len(owners)}: "
                f"{owners}"
            )
        self.roles = dict(roles)
        self.gate_owner = owners[0]

    @classmethod
    def from_definitions(cls, definitions: Iterable[CharterDefinition]) -> PermissionEngine:
        return cls({d.id: d.role for d in definitions})

    def role_of(self, charter_id: str) -> CharterRole | None:
        return self.roles.get(charter_id)

    def check_permission(
        self,
        charter_id: str,
        action: ProtocolAction,
        resource_owner: str | None = None,
    ) -> PermissionCheckResult:
        """
        Check whether `charter_id` may perform `action`.

        Args:
            charter_id: The calling charter.
            action: The protocol operation being attempted.
            resource_owner: Owning charter of the target record, for
                heartbeat writes and EDO updates.

        Returns:
            PermissionCheckResult with decision and reasoning.
        """
        role = self.roles.get(charter_id)
        if role is None:
            return self._result(
                PermissionDecision.FORBIDDEN, action, charter_id, None,
                f"Unknown charter: {charter_id}",
            )

        if action == ProtocolAction.WRITE_GATE:
            if role == CharterRole.GATE_OWNER:
                return self._result(
                    PermissionDecision.AUTHORIZED, action, charter_id, role,
                    f"{charter_id} is the designated gate owner",
                )
            return self._result(
                PermissionDecision.FORBIDDEN, action, charter_id, role,
                f"{charter_id} may not write the budget gate; the only writer is "
                f"{self.gate_owner}",
            )

        if action in (ProtocolAction.WRITE_HEARTBEAT, ProtocolAction.UPDATE_EDO):
            if resource_owner == charter_id:
                return self._result(
                    PermissionDecision.AUTHORIZED, action, charter_id, role,
                    f"{charter_id} owns the target record",
                )
            return self._result(
                PermissionDecision.FORBIDDEN, action, charter_id, role,
                f"{charter_id} may not {action.value} a record owned by {resource_owner}",
            )

        # READ_GATE and APPEND_EDO are open to every registered charter
        return self._result(
            PermissionDecision.AUTHORIZED, action, charter_id, role,
            f"{action.value} is permitted for every registered charter",
        )

    def require(
        self,
        charter_id: str,
        action: ProtocolAction,
        resource_owner: str | None = None,
    ) -> PermissionCheckResult:
        """Like check_permission, but raise PermissionDenied when forbidden."""
        result = self.check_permission(charter_id, action, resource_owner)
        if not result.is_allowed:
            logger.warning("Permission denied: %s", result.reason)
            raise PermissionDenied(result)
        return result

    @staticmethod
    def _result(
        decision: PermissionDecision,
        action: ProtocolAction,
        charter_id: str,
        role: CharterRole | None,
        reason: str,
    ) -> PermissionCheckResult:
        return PermissionCheckResult(
            decision=decision, action=action, charter_id=charter_id, role=role, reason=reason
        )
