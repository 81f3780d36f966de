"""
Governance Heartbeat — Read-only Dashboard.

FastAPI application providing:
- Budget gate status (with staleness classification)
- Current heartbeat per charter and heartbeat history
- Decision Log (EDO) explorer
- Store and decision log integrity audit

The dashboard never writes: every route reads through the protocol
services, so it holds no gate-owner or charter identity.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from governance_heartbeat.charters.registry import CharterRegistry
from governance_heartbeat.config import HeartbeatSettings, settings
from governance_heartbeat.governance.decision_log import DecisionLog
from governance_heartbeat.governance.gate import BudgetGateService
from governance_heartbeat.governance.heartbeat import HeartbeatLog
from governance_heartbeat.governance.permissions import PermissionEngine
from governance_heartbeat.governance.staleness import classify
from governance_heartbeat.store.base import DocumentStore
from governance_heartbeat.store.factory import open_store

logger = logging.getLogger(__name__)


class DashboardState:
    """Mutable application state injected at startup."""

    def __init__(self) -> None:
        self.store: DocumentStore | None = None
        self.registry: CharterRegistry | None = None
        self.gates: BudgetGateService | None = None
        self.heartbeats: HeartbeatLog | None = None
        self.decisions: DecisionLog | None = None
        self.startup_time: datetime = datetime.now(timezone.utc)

    def bind(self, store: DocumentStore, config: HeartbeatSettings) -> None:
        """Wire the read-side protocol services over a store."""
        self.store = store
        self.registry = CharterRegistry.from_ids(
            config.charters, gate_owner=config.gate_owner_charter
        )
        permissions = PermissionEngine.from_definitions(self.registry.definitions.values())
        self.gates = BudgetGateService(
            store, permissions, timedelta(seconds=config.gate_staleness_seconds)
        )
        self.heartbeats = HeartbeatLog(store, permissions)
        self.decisions = DecisionLog(store, permissions)


state = DashboardState()


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & shutdown lifecycle: open the document store."""
    if state.store is None:
        logger.info("Governance dashboard starting: store_backend=%s", settings.store_backend)
        state.bind(open_store(settings), settings)
    yield
    logger.info("Governance dashboard shut down")


app = FastAPI(
    title="Governance Heartbeat Dashboard",
    description="Read-only view of the budget gate, heartbeats and decision log",
    version="0.1.0",
    lifespan=lifespan,
)


def _require(service: Any, name: str) -> Any:
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return service


# ── Routes: Budget Gate ────────────────────────────────────────


@app.get("/api/gate")
async def api_gate():
    """Current budget gate and how a runner would classify it right now."""
    gates: BudgetGateService = _require(state.gates, "Gate service")
    gate = gates.read_gate()
    classification = classify(gate, datetime.now(timezone.utc), gates.staleness_threshold)
    return JSONResponse({
        "gate": gate.model_dump(mode="json") if gate is not None else None,
        "revision": gate.revision if gate is not None else 0,
        "classification": classification.label,
        "staleness_threshold_seconds": gates.staleness_threshold.total_seconds(),
    })


@app.get("/api/gate/history")
async def api_gate_history(limit: int = 20):
    """Prior gate revisions, newest first."""
    gates: BudgetGateService = _require(state.gates, "Gate service")
    return JSONResponse({
        "gates": [g.model_dump(mode="json") | {"revision": g.revision} for g in gates.history(limit)]
    })


# ── Routes: Heartbeats ─────────────────────────────────────────


@app.get("/api/heartbeats")
async def api_heartbeats():
    """The current heartbeat of every configured charter."""
    heartbeats: HeartbeatLog = _require(state.heartbeats, "Heartbeat log")
    registry: CharterRegistry = _require(state.registry, "Charter registry")
    latest = heartbeats.latest_all(registry.ids())
    return JSONResponse({
        "heartbeats": {
            cid: hb.model_dump(mode="json") if hb is not None else None
            for cid, hb in latest.items()
        }
    })


@app.get("/api/heartbeats/{charter_id}/history")
async def api_heartbeat_history(charter_id: str, limit: int = 20):
    """Prior heartbeats of one charter, newest first."""
    heartbeats: HeartbeatLog = _require(state.heartbeats, "Heartbeat log")
    registry: CharterRegistry = _require(state.registry, "Charter registry")
    if registry.get(charter_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown charter {charter_id}")
    return JSONResponse({
        "charter_id": charter_id,
        "heartbeats": [
            hb.model_dump(mode="json") for hb in heartbeats.history(charter_id, limit=limit)
        ],
    })


# ── Routes: Decision Log ───────────────────────────────────────


@app.get("/api/edos")
async def api_edos(charter_id: str | None = None):
    """All decision records, optionally filtered by charter."""
    decisions: DecisionLog = _require(state.decisions, "Decision log")
    records = decisions.list_edos(charter_id=charter_id)
    return JSONResponse({
        "edos": [r.model_dump(mode="json") for r in records],
        "total": len(records),
    })


@app.get("/api/edos/{edo_id}")
async def api_edo(edo_id: str):
    """A single decision record."""
    decisions: DecisionLog = _require(state.decisions, "Decision log")
    record = decisions.get_edo(edo_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown decision record {edo_id}")
    return JSONResponse(record.model_dump(mode="json"))


# ── Routes: Audit ──────────────────────────────────────────────


@app.get("/api/audit")
async def api_audit():
    """Verify the commit chain and the decision index/record bijection."""
    store: DocumentStore = _require(state.store, "Document store")
    decisions: DecisionLog = _require(state.decisions, "Decision log")
    history_valid, commits_checked, history_message = store.verify_history()
    edo_valid, edo_message = decisions.check_consistency()
    return JSONResponse({
        "valid": history_valid and edo_valid,
        "history": {
            "valid": history_valid,
            "commits_checked": commits_checked,
            "message": history_message,
        },
        "decision_log": {"valid": edo_valid, "message": edo_message},
    })


# ── Health Check ───────────────────────────────────────────────


@app.get("/health")
async def health():
    """Health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": (datetime.now(timezone.utc) - state.startup_time).total_seconds(),
        "store_available": state.store is not None,
        "charters": state.registry.ids() if state.registry is not None else [],
        "gate_owner": state.registry.gate_owner if state.registry is not None else None,
    })
