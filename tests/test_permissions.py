"""
Tests for the Permission Engine.

Validates:
- Single gate owner enforcement
- Gate writes restricted to the owner
- Ownership of heartbeats and decision records
"""

from __future__ import annotations

import pytest

from governance_heartbeat.governance.permissions import (
    PermissionDecision,
    PermissionDenied,
    PermissionEngine,
    ProtocolAction,
)
from governance_heartbeat.protocol.schema import CharterRole


class TestPermissionEngine:
    """Test the protocol permission engine."""

    def setup_method(self):
        self.engine = PermissionEngine({
            "GOVERN": CharterRole.GATE_OWNER,
            "SUSTAINABILITY": CharterRole.CHARTER,
        })

    def test_gate_owner_may_write_gate(self):
        result = self.engine.check_permission("GOVERN", ProtocolAction.WRITE_GATE)
        assert result.decision == PermissionDecision.AUTHORIZED

    def test_charter_may_not_write_gate(self):
        result = self.engine.check_permission("SUSTAINABILITY", ProtocolAction.WRITE_GATE)
        assert result.decision == PermissionDecision.FORBIDDEN
        assert "GOVERN" in result.reason

    def test_every_charter_may_read_gate(self):
        for cid in ("GOVERN", "SUSTAINABILITY"):
            assert self.engine.check_permission(cid, ProtocolAction.READ_GATE).is_allowed

    def test_unknown_charter_forbidden(self):
        result = self.engine.check_permission("ROGUE", ProtocolAction.READ_GATE)
        assert result.decision == PermissionDecision.FORBIDDEN

    def test_heartbeat_write_requires_ownership(self):
        own = self.engine.check_permission(
            "SUSTAINABILITY", ProtocolAction.WRITE_HEARTBEAT, resource_owner="SUSTAINABILITY"
        )
        other = self.engine.check_permission(
            "SUSTAINABILITY", ProtocolAction.WRITE_HEARTBEAT, resource_owner="GOVERN"
        )
        assert own.is_allowed
        assert not other.is_allowed

    def test_edo_update_only_by_creator(self):
        """Even the gate owner cannot update another charter's decision."""
        result = self.engine.check_permission(
            "GOVERN", ProtocolAction.UPDATE_EDO, resource_owner="SUSTAINABILITY"
        )
        assert result.decision == PermissionDecision.FORBIDDEN

    def test_require_raises(self):
        with pytest.raises(PermissionDenied) as exc:
            self.engine.require("SUSTAINABILITY", ProtocolAction.WRITE_GATE)
        assert exc.value.result.action == ProtocolAction.WRITE_GATE

    def test_gate_owner_exposed(self):
        assert self.engine.gate_owner == "GOVERN"
        assert self.engine.role_of("SUSTAINABILITY") == CharterRole.CHARTER


class TestGateOwnerConfiguration:
    """Exactly one charter may hold the gate-owner role."""

    def test_two_owners_rejected(self):
        with pytest.raises(ValueError):
            PermissionEngine({"GOVERN": CharterRole.GATE_OWNER, "OTHER": CharterRole.GATE_OWNER})

    def test_no_owner_rejected(self):
        with pytest.raises(ValueError):
            PermissionEngine({"SUSTAINABILITY": CharterRole.CHARTER})
