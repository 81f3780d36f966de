"""
Staleness / Veto Detector — classifies the budget gate as seen by a runner.

Order of checks is fixed:

1. missing            → BLOCKED(missing)
2. older than limit   → BLOCKED(stale)
3. allow_runs=false   → VETOED
4. otherwise          → USABLE

Staleness is decided before veto: a stale gate's allow_runs value is not
trusted, so a stale gate that also says allow_runs=false is BLOCKED.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from governance_heartbeat.protocol.schema import (
    BlockReason,
    BudgetGate,
    GateClassification,
    GateVerdict,
)


def is_stale(gate: BudgetGate | None, now: datetime, threshold: timedelta) -> bool:
    """True when the gate is missing or `now - gate.updated_at > threshold`."""
    if gate is None:
        return True
    return now - gate.updated_at > threshold


def classify(gate: BudgetGate | None, now: datetime, threshold: timedelta) -> GateClassification:
    """Pure classification of a gate at `now`."""
    if gate is None:
        return GateClassification(verdict=GateVerdict.BLOCKED, block_reason=BlockReason.MISSING)
    if is_stale(gate, now, threshold):
        return GateClassification(
            verdict=GateVerdict.BLOCKED, block_reason=BlockReason.STALE, gate=gate
        )
    if not gate.allow_runs:
        return GateClassification(verdict=GateVerdict.VETOED, gate=gate)
    return GateClassification(verdict=GateVerdict.USABLE, gate=gate)
