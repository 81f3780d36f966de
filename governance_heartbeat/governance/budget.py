"""Per-run resource metering against the budget gate's ceilings."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable

from governance_heartbeat.protocol.schema import Heartbeat, ResourceLimits, ResourceUsage

logger = logging.getLogger(__name__)


class BudgetExceeded(RuntimeError):
    """Raised when a charter run would exceed a gate ceiling."""

    def __init__(self, resource: str, used: int, limit: int) -> None:
        super().__init__(f"Budget exceeded: {resource} {used} > {limit}")
        self.resource = resource
        self.used = used
        self.limit = limit


def spawns_in_last_hour(history: Iterable[Heartbeat], now: datetime) -> int:
    """Brain spawns recorded by heartbeats within the trailing hour."""
    cutoff = now - timedelta(hours=1)
    return sum(hb.usage.brain_spawns for hb in history if hb.timestamp > cutoff)


class RunBudget:
    """
    Meter handed to charter logic for the duration of one run.

    Every charge is checked against the gate ceilings; the charge that would
    cross a ceiling raises BudgetExceeded and is not recorded, so the run can
    be aborted without having spent past the limit.
    """

    def __init__(self, limits: ResourceLimits, spawns_used_this_hour: int = 0) -> None:
        self.limits = limits
        self.spawn_allowance = max(0, limits.max_brain_spawns_per_hour - spawns_used_this_hour)
        self._tokens = 0
        self._tool_calls = 0
        self._spawns = 0

    def charge_tokens(self, count: int) -> None:
        if count < 0:
            raise ValueError("Token count must be non-negative")
        total = self._tokens + count
        if total > self.limits.max_tokens_per_charter_run:
            raise BudgetExceeded("tokens", total, self.limits.max_tokens_per_charter_run)
        self._tokens = total

    def record_tool_call(self) -> None:
        total = self._tool_calls + 1
        if total > self.limits.max_tool_calls_per_charter_run:
            raise BudgetExceeded("tool_calls", total, self.limits.max_tool_calls_per_charter_run)
        self._tool_calls = total

    def record_spawn(self) -> None:
        total = self._spawns + 1
        if total > self.spawn_allowance:
            raise BudgetExceeded("brain_spawns", total, self.spawn_allowance)
        self._spawns = total

    @property
    def usage(self) -> ResourceUsage:
        return ResourceUsage(
            tokens=self._tokens, tool_calls=self._tool_calls, brain_spawns=self._spawns
        )

    def reconcile(self, reported: ResourceUsage) -> ResourceUsage:
        """
        Merge usage the charter reported with what it metered.

        The larger of each figure wins; the merged usage is re-checked so a
        charter that under-meters and over-reports still trips the ceiling.
        """
        merged = ResourceUsage(
            tokens=max(self._tokens, reported.tokens),
            tool_calls=max(self._tool_calls, reported.tool_calls),
            brain_spawns=max(self._spawns, reported.brain_spawns),
        )
        if merged.tokens > self.limits.max_tokens_per_charter_run:
            raise BudgetExceeded("tokens", merged.tokens, self.limits.max_tokens_per_charter_run)
        if merged.tool_calls > self.limits.max_tool_calls_per_charter_run:
            raise BudgetExceeded(
                "tool_calls", merged.tool_calls, self.limits.max_tool_calls_per_charter_run
            )
        if merged.brain_spawns > self.spawn_allowance:
            raise BudgetExceeded("brain_spawns", merged.brain_spawns, self.spawn_allowance)
        return merged
