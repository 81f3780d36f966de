"""
Protocol Schema — Pydantic models for every governance heartbeat record.

These models are the canonical data structures of the heartbeat protocol.
They govern the shape of the documents written to the document store
(budget gate, heartbeats, decision records and their index) and the
contract between a charter runner and the charter decision logic it invokes.

Record families:
    BudgetGate   — singleton, written only by the gate-owner charter
    Heartbeat    — one current record per charter, overwritten each cycle
    DecisionRecord (EDO) + DecisionIndex — append/update decision provenance
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field, computed_field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ════════════════════════════════════════════════════════════════
# Document Paths
# ════════════════════════════════════════════════════════════════

GATE_PATH = "gate/budget_gate.json"
HEARTBEAT_DIR = "heartbeats"
EDO_RECORD_DIR = "edo/records"
EDO_INDEX_PATH = "edo/index.json"


def heartbeat_path(charter_id: str) -> str:
    """Document path of a charter's current heartbeat."""
    return f"{HEARTBEAT_DIR}/{charter_id.lower()}.json"


def edo_record_path(edo_id: str) -> str:
    """Document path of a single decision record."""
    return f"{EDO_RECORD_DIR}/{edo_id}.json"


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class CharterRole(str, enum.Enum):
    """Protocol roles a charter may hold."""

    GATE_OWNER = "gate_owner"  # The single writer of the budget gate
    CHARTER = "charter"  # Read-only gate access


class BudgetStatus(str, enum.Enum):
    """Coarse health of the shared resource budget."""

    OK = "ok"
    WARN = "warn"
    CRITICAL = "critical"


class HeartbeatDecision(str, enum.Enum):
    """What a charter did this cycle."""

    RAN = "ran"
    NO_OP = "no-op"


class NoOpReason(str, enum.Enum):
    """Why a charter did not run."""

    BLOCKED = "blocked"  # Gate missing or stale
    VETO = "veto"  # Fresh gate with allow_runs=false


class CycleOutcome(str, enum.Enum):
    """How a cycle terminated."""

    OK = "ok"
    TIMEOUT = "timeout"
    BUDGET_EXCEEDED = "budget_exceeded"
    CONFLICT = "conflict"
    ERROR = "error"


class GateVerdict(str, enum.Enum):
    """Classification of the current gate as seen by a runner."""

    USABLE = "usable"
    BLOCKED = "blocked"
    VETOED = "vetoed"


class BlockReason(str, enum.Enum):
    """Sub-reason for a BLOCKED verdict."""

    MISSING = "missing"
    STALE = "stale"


class DecisionStatus(str, enum.Enum):
    """Lifecycle of a decision thread."""

    OPEN = "open"
    CLOSED = "closed"


class RunnerState(str, enum.Enum):
    """Charter heartbeat runner states."""

    IDLE = "idle"
    EVALUATING = "evaluating"
    NOOP_BLOCKED = "noop_blocked"
    NOOP_VETO = "noop_veto"
    RUNNING = "running"
    COMPLETED = "completed"


TERMINAL_STATES = frozenset(
    {RunnerState.NOOP_BLOCKED, RunnerState.NOOP_VETO, RunnerState.COMPLETED}
)


# ════════════════════════════════════════════════════════════════
# Budget Gate Models
# ════════════════════════════════════════════════════════════════


class ResourceLimits(BaseModel):
    """Per-run resource ceilings a charter must respect."""

    max_tokens_per_charter_run: int = Field(ge=0)
    max_tool_calls_per_charter_run: int = Field(ge=0)
    max_brain_spawns_per_hour: int = Field(ge=0)


class ResourceUsage(BaseModel):
    """Resources consumed by one charter run."""

    tokens: int = Field(default=0, ge=0)
    tool_calls: int = Field(default=0, ge=0)
    brain_spawns: int = Field(default=0, ge=0)


class GateUpdate(BaseModel):
    """The fields the gate owner supplies when (re)writing the gate."""

    allow_runs: bool
    max_tokens_per_charter_run: int = Field(ge=0)
    max_tool_calls_per_charter_run: int = Field(ge=0)
    max_brain_spawns_per_hour: int = Field(ge=0)
    budget_status: BudgetStatus = BudgetStatus.OK
    burn_rate_trend: str = ""
    halted_since: datetime | None = Field(
        default=None, description="When the current critical-burn halt began"
    )


class BudgetGate(GateUpdate):
    """
    The single shared record controlling whether any charter may run.

    Exactly one live instance. Written only by the designated gate owner;
    every other charter reads it. A gate older than the configured
    staleness threshold is not usable by any runner.
    """

    updated_at: datetime = Field(default_factory=utcnow)
    updated_by: str = Field(description="Charter ID of the gate owner that wrote it")
    revision: int = Field(
        default=0, exclude=True, description="Store revision this gate was read at"
    )

    @property
    def limits(self) -> ResourceLimits:
        return ResourceLimits(
            max_tokens_per_charter_run=self.max_tokens_per_charter_run,
            max_tool_calls_per_charter_run=self.max_tool_calls_per_charter_run,
            max_brain_spawns_per_hour=self.max_brain_spawns_per_hour,
        )


class GateClassification(BaseModel):
    """Result of classifying a gate at a point in time."""

    verdict: GateVerdict
    block_reason: BlockReason | None = None
    gate: BudgetGate | None = None

    @computed_field
    @property
    def label(self) -> str:
        if self.block_reason is not None:
            return f"{self.verdict.value}({self.block_reason.value})"
        return self.verdict.value


# ════════════════════════════════════════════════════════════════
# Heartbeat Models
# ════════════════════════════════════════════════════════════════


class Heartbeat(BaseModel):
    """
    Per-cycle, per-charter outcome record.

    `decision=no-op` always carries a `no_op_reason` (blocked or veto) and
    `decision=ran` never does. A failed run is still `ran`; the failure is
    described by `outcome` and `failure`.
    """

    charter_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    decision: HeartbeatDecision
    no_op_reason: NoOpReason | None = None
    summary: str = Field(default="", description="Evidence / summary of the cycle")
    outcome: CycleOutcome = CycleOutcome.OK
    failure: str | None = None
    usage: ResourceUsage = Field(default_factory=ResourceUsage)
    gate_updated_at: datetime | None = Field(
        default=None, description="updated_at of the gate this cycle observed"
    )
    charter_decision: HeartbeatDecision | None = Field(
        default=None, description="What the charter logic itself reported, if it ran"
    )
    edo_id: str | None = None

    @model_validator(mode="after")
    def _check_no_op_reason(self) -> Heartbeat:
        if self.decision == HeartbeatDecision.NO_OP and self.no_op_reason is None:
            raise ValueError("no-op heartbeat requires a no_op_reason")
        if self.decision == HeartbeatDecision.RAN and self.no_op_reason is not None:
            raise ValueError("ran heartbeat must not carry a no_op_reason")
        if self.decision == HeartbeatDecision.NO_OP and self.edo_id is not None:
            raise ValueError("no-op heartbeat cannot reference a decision record")
        return self


# ════════════════════════════════════════════════════════════════
# Decision Record (EDO) Models
# ════════════════════════════════════════════════════════════════


def _validate_choice(alternatives: list[str], chosen: str | None) -> None:
    if any(not alternative.strip() for alternative in alternatives):
        raise ValueError("alternatives must be non-blank")
    if chosen is not None and alternatives and chosen not in alternatives:
        raise ValueError(f"chosen {chosen!r} is not among the alternatives considered")


class DecisionDraft(BaseModel):
    """A decision the charter logic proposes to record."""

    alternatives_considered: list[str] = Field(min_length=2)
    chosen: str = Field(min_length=1)
    rationale: str = ""

    @model_validator(mode="after")
    def _check_choice(self) -> DecisionDraft:
        _validate_choice(self.alternatives_considered, self.chosen)
        return self


class DecisionRecord(BaseModel):
    """
    An EDO — a recorded choice among real alternatives.

    Created only when a run weighed at least two alternatives. Never
    deleted by the protocol; updatable only by the charter that created
    it, and only while its thread is open.
    """

    id: str
    charter_id: str
    alternatives_considered: list[str] = Field(min_length=2)
    chosen: str
    rationale: str = ""
    status: DecisionStatus = DecisionStatus.OPEN
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class DecisionIndex(BaseModel):
    """Mapping of every EDO id to its document path."""

    entries: dict[str, str] = Field(default_factory=dict)

    def next_id(self) -> str:
        """Next monotonic identifier (edo-000001, edo-000002, ...)."""
        highest = 0
        for edo_id in self.entries:
            try:
                highest = max(highest, int(edo_id.rsplit("-", 1)[1]))
            except (IndexError, ValueError):
                continue
        return f"edo-{highest + 1:06d}"


# ════════════════════════════════════════════════════════════════
# Charter Logic Contract
# ════════════════════════════════════════════════════════════════


class CharterResult(BaseModel):
    """Structured result returned by a charter's decision logic."""

    summary: str
    decision: HeartbeatDecision = HeartbeatDecision.RAN
    alternatives_considered: list[str] = Field(default_factory=list)
    chosen: str | None = None
    rationale: str = ""
    usage: ResourceUsage = Field(default_factory=ResourceUsage)

    @model_validator(mode="after")
    def _check_choice(self) -> CharterResult:
        _validate_choice(self.alternatives_considered, self.chosen)
        return self

    @property
    def made_real_choice(self) -> bool:
        """True when at least two alternatives were weighed."""
        return len(self.alternatives_considered) >= 2

    def decision_draft(self) -> DecisionDraft | None:
        """The EDO draft this result implies, or None for mechanical runs."""
        if not self.made_real_choice:
            return None
        return DecisionDraft(
            alternatives_considered=list(self.alternatives_considered),
            chosen=self.chosen or self.alternatives_considered[0],
            rationale=self.rationale,
        )


class CharterDefinition(BaseModel):
    """
    A defined governance charter.

    The definition persists independently of the logic that implements it;
    the registry validates that exactly one definition holds the gate-owner
    role.
    """

    id: str = Field(description="Charter identifier (e.g., 'GOVERN')")
    title: str
    role: CharterRole = CharterRole.CHARTER
    description: str = ""
    prompt: str = Field(default="", description="Instructions handed to the charter logic")
    cron: str = Field(default="0 * * * *", description="Cadence hint for the external scheduler")
    timezone: str = "UTC"
    entrypoint: str = Field(default="", description="Message that starts the charter's run")


class CycleReport(BaseModel):
    """What a single runner cycle did, returned to the caller."""

    charter_id: str
    state: RunnerState
    transitions: list[RunnerState] = Field(default_factory=list)
    classification: GateClassification | None = None
    heartbeat: Heartbeat | None = None
    gate_written: BudgetGate | None = None
    edo_id: str | None = None
    failure: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None
