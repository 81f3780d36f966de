"""Tests for gate staleness / veto classification."""

from __future__ import annotations

from datetime import timedelta

from governance_heartbeat.governance.staleness import classify, is_stale
from governance_heartbeat.protocol.schema import BlockReason, BudgetGate, GateVerdict

from fakes import T0

THRESHOLD = timedelta(hours=2)


def _gate(allow_runs: bool = True, age: timedelta = timedelta(0)) -> BudgetGate:
    return BudgetGate(
        allow_runs=allow_runs,
        max_tokens_per_charter_run=1000,
        max_tool_calls_per_charter_run=10,
        max_brain_spawns_per_hour=4,
        updated_at=T0 - age,
        updated_by="GOVERN",
    )


class TestClassify:
    """Order of checks: missing, stale, veto, usable."""

    def test_missing_gate_is_blocked(self):
        result = classify(None, T0, THRESHOLD)
        assert result.verdict == GateVerdict.BLOCKED
        assert result.block_reason == BlockReason.MISSING
        assert result.gate is None

    def test_fresh_gate_is_usable(self):
        result = classify(_gate(), T0, THRESHOLD)
        assert result.verdict == GateVerdict.USABLE
        assert result.block_reason is None

    def test_old_gate_is_stale(self):
        result = classify(_gate(age=timedelta(hours=3)), T0, THRESHOLD)
        assert result.verdict == GateVerdict.BLOCKED
        assert result.block_reason == BlockReason.STALE

    def test_fresh_veto(self):
        result = classify(_gate(allow_runs=False), T0, THRESHOLD)
        assert result.verdict == GateVerdict.VETOED

    def test_stale_veto_is_blocked_not_vetoed(self):
        """A stale gate's allow_runs is not trusted."""
        result = classify(_gate(allow_runs=False, age=timedelta(hours=3)), T0, THRESHOLD)
        assert result.verdict == GateVerdict.BLOCKED
        assert result.block_reason == BlockReason.STALE

    def test_exactly_at_threshold_is_fresh(self):
        assert not is_stale(_gate(age=THRESHOLD), T0, THRESHOLD)
        assert is_stale(_gate(age=THRESHOLD + timedelta(seconds=1)), T0, THRESHOLD)

    def test_missing_counts_as_stale(self):
        assert is_stale(None, T0, THRESHOLD)
