"""
Budget Gate — the single shared record controlling whether charters may run.

The gate is read by every charter and written by exactly one: the
designated gate owner. Every write passes the permission engine first, so
a non-owner's attempt fails with PermissionDenied and leaves the gate
untouched.

The owner derives each new gate from the most recent heartbeat of every
charter: the burn-rate monitor turns their reported usage into a budget
status and a trend summary, and the gate policy turns that into ceilings
and the allow_runs switch.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Mapping

from governance_heartbeat.governance.permissions import PermissionEngine, ProtocolAction
from governance_heartbeat.governance.staleness import is_stale
from governance_heartbeat.protocol.schema import (
    GATE_PATH,
    BudgetGate,
    BudgetStatus,
    CycleOutcome,
    GateUpdate,
    Heartbeat,
    HeartbeatDecision,
    ResourceLimits,
    utcnow,
)
from governance_heartbeat.store.base import DocumentStore

logger = logging.getLogger(__name__)


class BudgetGateService:
    """
    Read/write access to the budget gate document.

    Usage:
        gates = BudgetGateService(store, permissions, timedelta(hours=2))
        gate = gates.read_gate()             # BudgetGate or None
        gates.write_gate("GOVERN", update)   # gate owner only
    """

    def __init__(
        self,
        store: DocumentStore,
        permissions: PermissionEngine,
        staleness_threshold: timedelta,
    ) -> None:
        self.store = store
        self.permissions = permissions
        self.staleness_threshold = staleness_threshold

    def read_gate(self) -> BudgetGate | None:
        """Return the latest committed gate, or None when no gate exists."""
        doc = self.store.read(GATE_PATH)
        if doc is None:
            return None
        gate = BudgetGate.model_validate(doc.content)
        gate.revision = doc.revision
        return gate

    def write_gate(
        self,
        caller: str,
        update: GateUpdate,
        now: datetime | None = None,
        expected_revision: int | None = None,
    ) -> BudgetGate:
        """
        Overwrite the gate. Gate-owner role only.

        `expected_revision` is the revision the caller last read (0 for "no
        gate yet"); when omitted the current revision is used.

        Raises:
            PermissionDenied: caller is not the designated gate owner.
            WriteConflict: another commit replaced the gate since it was read.
        """
        self.permissions.require(caller, ProtocolAction.WRITE_GATE)

        if expected_revision is None:
            current = self.store.read(GATE_PATH)
            expected_revision = current.revision if current else 0
        gate = BudgetGate(**update.model_dump(), updated_at=now or utcnow(), updated_by=caller)

        commit = self.store.write(
            GATE_PATH,
            gate.model_dump(mode="json"),
            expected_revision=expected_revision,
            author=caller,
            message=f"gate: allow_runs={gate.allow_runs} status={gate.budget_status.value}",
        )
        gate.revision = commit.revisions[GATE_PATH]

        logger.info(
            "Budget gate written: owner=%s allow_runs=%s status=%s rev=%d",
            caller, gate.allow_runs, gate.budget_status.value, gate.revision,
        )
        return gate

    def is_stale(self, gate: BudgetGate | None, now: datetime | None = None) -> bool:
        return is_stale(gate, now or utcnow(), self.staleness_threshold)

    def history(self, limit: int = 20) -> list[BudgetGate]:
        """Previous gates, newest first."""
        gates = []
        for commit in self.store.history(GATE_PATH, limit=limit):
            revision = commit.revisions[GATE_PATH]
            doc = self.store.read_revision(GATE_PATH, revision)
            if doc is not None:
                gate = BudgetGate.model_validate(doc.content)
                gate.revision = revision
                gates.append(gate)
        return gates


# ════════════════════════════════════════════════════════════════
# Burn-Rate Aggregation and Gate Policy
# ════════════════════════════════════════════════════════════════


class BurnRateMonitor:
    """Turns charters' latest heartbeats into a budget status and trend summary."""

    def __init__(self, warn_ratio: float = 0.6, critical_ratio: float = 0.9) -> None:
        if not 0 < warn_ratio <= critical_ratio:
            raise ValueError("Require 0 < warn_ratio <= critical_ratio")
        self.warn_ratio = warn_ratio
        self.critical_ratio = critical_ratio

    def assess(
        self,
        heartbeats: Mapping[str, Heartbeat | None],
        limits: ResourceLimits,
    ) -> tuple[BudgetStatus, str]:
        """
        Assess burn rate across charters.

        The ratio is tokens used by charters that ran, over the token ceiling
        times the number of charters that ran. A budget_exceeded outcome in
        any heartbeat raises the status to at least WARN.
        """
        ran = [
            hb for hb in heartbeats.values()
            if hb is not None and hb.decision == HeartbeatDecision.RAN
        ]
        tokens = sum(hb.usage.tokens for hb in ran)
        tool_calls = sum(hb.usage.tool_calls for hb in ran)
        capacity = limits.max_tokens_per_charter_run * len(ran)
        ratio = tokens / capacity if capacity else 0.0

        if ratio >= self.critical_ratio:
            status = BudgetStatus.CRITICAL
        elif ratio >= self.warn_ratio:
            status = BudgetStatus.WARN
        else:
            status = BudgetStatus.OK

        exceeded = sorted(
            cid for cid, hb in heartbeats.items()
            if hb is not None and hb.outcome == CycleOutcome.BUDGET_EXCEEDED
        )
        if exceeded and status == BudgetStatus.OK:
            status = BudgetStatus.WARN

        failed = sum(
            1 for hb in heartbeats.values()
            if hb is not None and hb.outcome != CycleOutcome.OK
        )
        silent = sorted(cid for cid, hb in heartbeats.items() if hb is None)

        trend = (
            f"tokens={tokens}/{capacity} ({ratio:.0%}) tool_calls={tool_calls} "
            f"across {len(ran)} run(s); failures={failed}"
        )
        if exceeded:
            trend += f"; over-budget: {','.join(exceeded)}"
        if silent:
            trend += f"; no heartbeat: {','.join(silent)}"
        return status, trend


class GatePolicy:
    """
    Builds the next gate update the owner will write.

    A critical burn halts runs. Once halted, no charter runs, so the latest
    heartbeats carry no usage and would read as OK on the next cycle. The
    halt is therefore held from the previous gate until either a charter has
    run under a gate at least as new as the halted one or `critical_cooldown`
    has elapsed since the halt began. When the cooldown expires without new
    evidence, runs resume at WARN so the burn can be measured again.
    """

    def __init__(
        self,
        ceilings: ResourceLimits,
        monitor: BurnRateMonitor,
        allow_runs: bool = True,
        halt_on_critical: bool = True,
        critical_cooldown: timedelta = timedelta(hours=1),
    ) -> None:
        self.ceilings = ceilings
        self.monitor = monitor
        self.allow_runs = allow_runs
        self.halt_on_critical = halt_on_critical
        self.critical_cooldown = critical_cooldown

    def next_gate(
        self,
        heartbeats: Mapping[str, Heartbeat | None],
        previous: BudgetGate | None = None,
        now: datetime | None = None,
    ) -> GateUpdate:
        now = now or utcnow()
        status, trend = self.monitor.assess(heartbeats, self.ceilings)

        halted_since: datetime | None = None
        if self.halt_on_critical:
            held = previous.halted_since if previous is not None else None
            if status == BudgetStatus.CRITICAL:
                halted_since = held or now
            elif held is not None and not self._ran_since(heartbeats, previous):
                if now - held < self.critical_cooldown:
                    status = BudgetStatus.CRITICAL
                    halted_since = held
                    trend += f"; holding critical halt since {held.isoformat()}"
                else:
                    status = BudgetStatus.WARN
                    trend += "; critical halt cooled down, re-measuring"

        allow = self.allow_runs and halted_since is None
        if not allow:
            logger.warning(
                "Gate policy vetoes runs: operator_allow=%s status=%s halted_since=%s",
                self.allow_runs, status.value,
                halted_since.isoformat() if halted_since else "-",
            )
        return GateUpdate(
            allow_runs=allow,
            max_tokens_per_charter_run=self.ceilings.max_tokens_per_charter_run,
            max_tool_calls_per_charter_run=self.ceilings.max_tool_calls_per_charter_run,
            max_brain_spawns_per_hour=self.ceilings.max_brain_spawns_per_hour,
            budget_status=status,
            burn_rate_trend=trend,
            halted_since=halted_since,
        )

    @staticmethod
    def _ran_since(heartbeats: Mapping[str, Heartbeat | None], gate: BudgetGate) -> bool:
        """True when some charter ran under `gate` or a newer one."""
        return any(
            hb is not None
            and hb.decision == HeartbeatDecision.RAN
            and hb.gate_updated_at is not None
            and hb.gate_updated_at >= gate.updated_at
            for hb in heartbeats.values()
        )
