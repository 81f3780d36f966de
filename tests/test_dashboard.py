"""Tests for the read-only dashboard API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from governance_heartbeat.config import HeartbeatSettings
from governance_heartbeat.dashboard.app import app, state
from governance_heartbeat.protocol.schema import DecisionDraft, Heartbeat, HeartbeatDecision
from governance_heartbeat.store.file_store import FileDocumentStore

from fakes import build_services, gate_update


class TestDashboard:

    @pytest.fixture(autouse=True)
    def _state(self, tmp_path):
        self.store = FileDocumentStore(tmp_path)
        self.services = build_services(self.store)
        state.bind(self.store, HeartbeatSettings(store_root=str(tmp_path)))
        self.client = TestClient(app)
        yield
        state.__init__()

    def test_health(self):
        data = self.client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["store_available"]
        assert data["gate_owner"] == "GOVERN"

    def test_gate_missing(self):
        data = self.client.get("/api/gate").json()
        assert data["gate"] is None
        assert data["classification"] == "blocked(missing)"

    def test_gate_usable(self):
        self.services.gates.write_gate("GOVERN", gate_update())
        data = self.client.get("/api/gate").json()
        assert data["classification"] == "usable"
        assert data["revision"] == 1
        assert data["gate"]["updated_by"] == "GOVERN"

    def test_gate_history(self):
        self.services.gates.write_gate("GOVERN", gate_update())
        self.services.gates.write_gate("GOVERN", gate_update(allow_runs=False))
        gates = self.client.get("/api/gate/history").json()["gates"]
        assert [g["revision"] for g in gates] == [2, 1]

    def test_heartbeats(self):
        self.services.heartbeats.write(
            "GOVERN",
            Heartbeat(charter_id="GOVERN", decision=HeartbeatDecision.RAN, summary="ok"),
            expected_revision=0,
        )
        data = self.client.get("/api/heartbeats").json()["heartbeats"]
        assert data["GOVERN"]["summary"] == "ok"
        assert data["SUSTAINABILITY"] is None

        history = self.client.get("/api/heartbeats/GOVERN/history").json()
        assert len(history["heartbeats"]) == 1

    def test_unknown_charter_history(self):
        assert self.client.get("/api/heartbeats/ROGUE/history").status_code == 404

    def test_edos(self):
        self.services.decisions.append_edo(
            "SUSTAINABILITY",
            DecisionDraft(alternatives_considered=["a", "b"], chosen="b"),
        )
        listing = self.client.get("/api/edos").json()
        assert listing["total"] == 1
        assert self.client.get("/api/edos", params={"charter_id": "GOVERN"}).json()["total"] == 0

        record = self.client.get("/api/edos/edo-000001").json()
        assert record["chosen"] == "b"
        assert self.client.get("/api/edos/edo-000404").status_code == 404

    def test_audit(self):
        self.services.gates.write_gate("GOVERN", gate_update())
        data = self.client.get("/api/audit").json()
        assert data["valid"]
        assert data["history"]["commits_checked"] == 1

    def test_uninitialized_state(self):
        state.__init__()
        assert self.client.get("/api/gate").status_code == 503
