"""
Charter Heartbeat Runner — the per-charter cycle state machine.

One runner per charter. Each cycle walks:

    IDLE → EVALUATING → NOOP_BLOCKED                     (gate missing or stale)
                      → NOOP_VETO                        (fresh gate, allow_runs=false)
                      → RUNNING → COMPLETED              (gate usable)

and always ends in exactly one terminal state. Nothing carries over from
one cycle to the next except what was committed to the store.

Rules enforced here:

1. No charter logic runs and no EDO is written on a NOOP path.
2. The gate owner writes the gate before it classifies, so its own cycle is
   never blocked by a missing or stale gate, and the gate write is committed
   before the owner's heartbeat (write-before-report).
3. A runner never acts on a gate older than one it has already seen
   (monotonic read); a regressed gate is treated as stale.
4. Charter logic runs under the cycle timeout and the gate's ceilings; a
   timeout or ceiling breach completes the cycle with a failure outcome.
5. A write conflict is retried with a fresh read; a repeated conflict is
   reported as a cycle failure.
6. PermissionDenied and DecisionLogCorruption are fatal and propagate.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, TypeVar

from governance_heartbeat.charters.base import CharterContext, CharterLogic
from governance_heartbeat.governance.budget import BudgetExceeded, RunBudget, spawns_in_last_hour
from governance_heartbeat.governance.decision_log import DecisionLog
from governance_heartbeat.governance.gate import BudgetGateService, GatePolicy
from governance_heartbeat.governance.heartbeat import HeartbeatLog
from governance_heartbeat.governance.permissions import PermissionDenied
from governance_heartbeat.governance.staleness import classify
from governance_heartbeat.protocol.schema import (
    BlockReason,
    BudgetGate,
    CharterResult,
    CharterRole,
    CycleOutcome,
    CycleReport,
    DecisionDraft,
    GateClassification,
    GateVerdict,
    Heartbeat,
    HeartbeatDecision,
    NoOpReason,
    ResourceUsage,
    RunnerState,
    TERMINAL_STATES,
    utcnow,
)
from governance_heartbeat.store.base import WriteConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALLOWED_TRANSITIONS: dict[RunnerState, frozenset[RunnerState]] = {
    RunnerState.IDLE: frozenset({RunnerState.EVALUATING}),
    RunnerState.EVALUATING: frozenset(
        {RunnerState.NOOP_BLOCKED, RunnerState.NOOP_VETO, RunnerState.RUNNING}
    ),
    RunnerState.RUNNING: frozenset({RunnerState.COMPLETED}),
    RunnerState.NOOP_BLOCKED: frozenset(),
    RunnerState.NOOP_VETO: frozenset(),
    RunnerState.COMPLETED: frozenset(),
}


class InvalidTransition(RuntimeError):
    """Raised when the runner attempts a transition the state machine forbids."""
    pass


class CharterRunner:
    """
    Executes one charter's heartbeat cycle.

    Usage:
        runner = CharterRunner(logic, gates, heartbeats, decisions, cycle_timeout=300)
        report = await runner.run_cycle()

    The gate owner's runner additionally takes a GatePolicy and the ids of
    the charters whose heartbeats feed the burn-rate assessment.
    """

    def __init__(
        self,
        logic: CharterLogic,
        gates: BudgetGateService,
        heartbeats: HeartbeatLog,
        decisions: DecisionLog,
        cycle_timeout: float = 600.0,
        conflict_retries: int = 1,
        gate_policy: GatePolicy | None = None,
        watched_charters: Iterable[str] = (),
        history_limit: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logic = logic
        self.gates = gates
        self.heartbeats = heartbeats
        self.decisions = decisions
        self.cycle_timeout = cycle_timeout
        self.conflict_retries = conflict_retries
        self.gate_policy = gate_policy
        self.watched_charters = list(watched_charters)
        self.history_limit = history_limit
        self.clock = clock

        self.state = RunnerState.IDLE
        self._transitions: list[RunnerState] = [RunnerState.IDLE]
        self._last_gate_seen: tuple[int, datetime] | None = None

        if self.is_gate_owner and self.gate_policy is None:
            raise ValueError(f"Gate-owner runner {self.charter_id} needs a GatePolicy")

    @property
    def charter_id(self) -> str:
        return self.logic.charter_id

    @property
    def is_gate_owner(self) -> bool:
        return self.logic.definition.role == CharterRole.GATE_OWNER

    @property
    def staleness_threshold(self) -> timedelta:
        return self.gates.staleness_threshold

    # ── Cycle ───────────────────────────────────────────────────

    async def run_cycle(self) -> CycleReport:
        """
        Run one full cycle and return what happened.

        Raises:
            PermissionDenied: this runner attempted a write its role forbids.
            DecisionLogCorruption: the EDO index and records disagree.
        """
        self.state = RunnerState.IDLE
        self._transitions = [RunnerState.IDLE]
        self._transition(RunnerState.EVALUATING)

        now = self.clock()
        report = CycleReport(charter_id=self.charter_id, state=self.state)

        if self.is_gate_owner:
            try:
                gate = self._retry_on_conflict(lambda: self._write_gate(now), "gate write")
            except WriteConflict as e:
                return self._fail_without_gate(report, now, e)
            report.gate_written = gate
        else:
            gate = self._read_gate()

        classification = self._classify(gate, now)
        report.classification = classification
        logger.info(
            "Gate classified: charter=%s verdict=%s", self.charter_id, classification.label
        )

        if classification.verdict == GateVerdict.BLOCKED:
            self._transition(RunnerState.NOOP_BLOCKED)
            heartbeat = self._no_op_heartbeat(NoOpReason.BLOCKED, classification, now)
            return self._finish(report, heartbeat)

        if classification.verdict == GateVerdict.VETOED:
            self._transition(RunnerState.NOOP_VETO)
            heartbeat = self._no_op_heartbeat(NoOpReason.VETO, classification, now)
            return self._finish(report, heartbeat)

        self._transition(RunnerState.RUNNING)
        return await self._run_charter(report, classification.gate, now)

    async def _run_charter(
        self, report: CycleReport, gate: BudgetGate, now: datetime
    ) -> CycleReport:
        history = self.heartbeats.history(self.charter_id, limit=self.history_limit)
        last_hour = self.heartbeats.since(self.charter_id, now - timedelta(hours=1))
        budget = RunBudget(gate.limits, spawns_in_last_hour(last_hour, now))
        context = CharterContext(
            charter=self.logic.definition,
            limits=gate.limits,
            budget=budget,
            history=history,
        )

        outcome = CycleOutcome.OK
        failure: str | None = None
        result: CharterResult | None = None
        draft: DecisionDraft | None = None
        usage = ResourceUsage()

        try:
            result = await asyncio.wait_for(self.logic.decide(context), self.cycle_timeout)
            usage = budget.reconcile(result.usage)
            draft = result.decision_draft()
        except asyncio.TimeoutError:
            outcome = CycleOutcome.TIMEOUT
            failure = f"Charter logic did not return within {self.cycle_timeout}s"
            usage = budget.usage
        except BudgetExceeded as e:
            outcome = CycleOutcome.BUDGET_EXCEEDED
            failure = f"Run aborted: {e}"
            usage = budget.usage
        except PermissionDenied:
            raise
        except Exception as e:
            logger.exception("Charter logic failed: charter=%s", self.charter_id)
            outcome = CycleOutcome.ERROR
            failure = f"Charter logic raised {type(e).__name__}: {e}"
            usage = budget.usage

        edo_id: str | None = None
        if draft is not None:
            try:
                record = self._retry_on_conflict(
                    lambda: self.decisions.append_edo(self.charter_id, draft), "EDO append"
                )
                edo_id = record.id
            except WriteConflict as e:
                outcome = CycleOutcome.CONFLICT
                failure = f"EDO append conflicted after retry: {e}"

        self._transition(RunnerState.COMPLETED)
        if failure is not None:
            logger.warning("Cycle failed: charter=%s outcome=%s %s", self.charter_id, outcome.value, failure)

        heartbeat = Heartbeat(
            charter_id=self.charter_id,
            timestamp=now,
            decision=HeartbeatDecision.RAN,
            summary=result.summary if result is not None else (failure or ""),
            outcome=outcome,
            failure=failure,
            usage=usage,
            gate_updated_at=gate.updated_at,
            charter_decision=result.decision if result is not None else None,
            edo_id=edo_id,
        )
        report.edo_id = edo_id
        report.failure = failure
        return self._finish(report, heartbeat)

    def _fail_without_gate(
        self, report: CycleReport, now: datetime, error: WriteConflict
    ) -> CycleReport:
        """The owner could not commit this cycle's gate; report and stop."""
        self._transition(RunnerState.RUNNING)
        self._transition(RunnerState.COMPLETED)
        failure = f"Gate write conflicted after retry: {error}"
        logger.warning("Cycle failed: charter=%s %s", self.charter_id, failure)
        heartbeat = Heartbeat(
            charter_id=self.charter_id,
            timestamp=now,
            decision=HeartbeatDecision.RAN,
            summary=failure,
            outcome=CycleOutcome.CONFLICT,
            failure=failure,
        )
        report.failure = failure
        return self._finish(report, heartbeat)

    # ── Gate access ─────────────────────────────────────────────

    def _write_gate(self, now: datetime) -> BudgetGate:
        current = self.gates.read_gate()
        heartbeats = self.heartbeats.latest_all(self.watched_charters or [self.charter_id])
        update = self.gate_policy.next_gate(heartbeats, previous=current, now=now)
        gate = self.gates.write_gate(
            self.charter_id,
            update,
            now=now,
            expected_revision=current.revision if current else 0,
        )
        self._remember(gate)
        return gate

    def _read_gate(self) -> BudgetGate | None:
        gate = self.gates.read_gate()
        if gate is not None and self._regressed(gate):
            logger.warning(
                "Gate regressed below last observed revision: charter=%s, re-reading",
                self.charter_id,
            )
            gate = self.gates.read_gate()
        if gate is not None and not self._regressed(gate):
            self._remember(gate)
        return gate

    def _classify(self, gate: BudgetGate | None, now: datetime) -> GateClassification:
        if gate is not None and self._regressed(gate):
            return GateClassification(
                verdict=GateVerdict.BLOCKED, block_reason=BlockReason.STALE, gate=gate
            )
        return classify(gate, now, self.staleness_threshold)

    def _regressed(self, gate: BudgetGate) -> bool:
        if self._last_gate_seen is None:
            return False
        revision, updated_at = self._last_gate_seen
        return gate.revision < revision or gate.updated_at < updated_at

    def _remember(self, gate: BudgetGate) -> None:
        self._last_gate_seen = (gate.revision, gate.updated_at)

    # ── Heartbeat ───────────────────────────────────────────────

    def _no_op_heartbeat(
        self, reason: NoOpReason, classification: GateClassification, now: datetime
    ) -> Heartbeat:
        gate = classification.gate
        if reason == NoOpReason.VETO:
            summary = "Budget gate vetoed runs (allow_runs=false)"
        elif classification.block_reason == BlockReason.MISSING:
            summary = "Budget gate missing"
        else:
            summary = (
                f"Budget gate stale (updated_at={gate.updated_at.isoformat()}, "
                f"threshold={self.staleness_threshold})"
            )
        return Heartbeat(
            charter_id=self.charter_id,
            timestamp=now,
            decision=HeartbeatDecision.NO_OP,
            no_op_reason=reason,
            summary=summary,
            gate_updated_at=gate.updated_at if gate is not None else None,
        )

    def _finish(self, report: CycleReport, heartbeat: Heartbeat) -> CycleReport:
        if self.state not in TERMINAL_STATES:
            raise InvalidTransition(f"Cycle finished in non-terminal state {self.state.value}")
        try:
            self._retry_on_conflict(lambda: self._write_heartbeat(heartbeat), "heartbeat write")
            report.heartbeat = heartbeat
        except WriteConflict as e:
            message = f"Heartbeat write conflicted after retry: {e}"
            logger.warning("Cycle failed: charter=%s %s", self.charter_id, message)
            report.failure = f"{report.failure}; {message}" if report.failure else message

        report.state = self.state
        report.transitions = list(self._transitions)
        logger.info(
            "Cycle finished: charter=%s state=%s edo=%s failure=%s",
            self.charter_id, self.state.value, report.edo_id or "-", report.failure or "-",
        )
        return report

    def _write_heartbeat(self, heartbeat: Heartbeat) -> None:
        _, revision = self.heartbeats.read(self.charter_id)
        self.heartbeats.write(self.charter_id, heartbeat, expected_revision=revision)

    # ── Internal ────────────────────────────────────────────────

    def _transition(self, target: RunnerState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} → {target.value} is not allowed")
        logger.debug("Runner %s: %s → %s", self.charter_id, self.state.value, target.value)
        self.state = target
        self._transitions.append(target)

    def _retry_on_conflict(self, operation: Callable[[], T], description: str) -> T:
        """Run `operation`, re-running it after a WriteConflict up to conflict_retries times."""
        attempts = self.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except WriteConflict as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Write conflict on %s (attempt %d/%d), retrying with fresh read: %s",
                    description, attempt, attempts, e,
                )
        raise AssertionError("unreachable")
