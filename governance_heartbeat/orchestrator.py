"""
Governance Heartbeat — Orchestrator.

Central coordination entrypoint that:
1. Opens the configured document store
2. Builds the permission engine and charter registry
3. Instantiates one heartbeat runner per charter
4. Runs heartbeat rounds: the gate owner first, then every other charter
   concurrently, so this round's gate is committed before anyone reads it

The cadence of rounds normally belongs to an external scheduler; `main()`
provides a simple interval loop and a `--once` mode for cron-style use.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

import structlog

from governance_heartbeat.charters.base import CharterLogic, LLMCharterLogic
from governance_heartbeat.charters.registry import CharterRegistry
from governance_heartbeat.config import HeartbeatSettings, settings
from governance_heartbeat.governance.decision_log import DecisionLog, DecisionLogCorruption
from governance_heartbeat.governance.gate import BudgetGateService, BurnRateMonitor, GatePolicy
from governance_heartbeat.governance.heartbeat import HeartbeatLog
from governance_heartbeat.governance.permissions import PermissionDenied, PermissionEngine
from governance_heartbeat.governance.runner import CharterRunner
from governance_heartbeat.protocol.schema import CharterDefinition, CycleReport, ResourceLimits
from governance_heartbeat.store.base import DocumentStore
from governance_heartbeat.store.factory import open_store

FATAL_ERRORS = (PermissionDenied, DecisionLogCorruption)


def configure_logging(config: HeartbeatSettings = settings) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=config.log_level, format="%(levelname)s %(name)s %(message)s")


@dataclass
class RoundResult:
    """Outcome of one heartbeat round across all charters."""

    reports: dict[str, CycleReport] = field(default_factory=dict)
    fatal: dict[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.fatal and all(r.succeeded for r in self.reports.values())


class HeartbeatCoordinator:
    """Runs the gate owner's cycle, then every other charter's cycle."""

    def __init__(self, owner: CharterRunner, others: list[CharterRunner]) -> None:
        self.owner = owner
        self.others = others

    async def run_round(self) -> RoundResult:
        result = RoundResult()
        log = structlog.get_logger()

        try:
            result.reports[self.owner.charter_id] = await self.owner.run_cycle()
        except FATAL_ERRORS as e:
            log.critical(
                "governance_heartbeat.orchestrator.fatal",
                charter=self.owner.charter_id, error=str(e),
            )
            result.fatal[self.owner.charter_id] = e

        outcomes = await asyncio.gather(
            *(runner.run_cycle() for runner in self.others), return_exceptions=True
        )
        for runner, outcome in zip(self.others, outcomes):
            if isinstance(outcome, CycleReport):
                result.reports[runner.charter_id] = outcome
            elif isinstance(outcome, FATAL_ERRORS):
                log.critical(
                    "governance_heartbeat.orchestrator.fatal",
                    charter=runner.charter_id, error=str(outcome),
                )
                result.fatal[runner.charter_id] = outcome
            else:
                raise outcome

        for charter_id, report in result.reports.items():
            log.info(
                "governance_heartbeat.orchestrator.cycle_completed",
                charter=charter_id,
                state=report.state.value,
                decision=report.heartbeat.decision.value if report.heartbeat else None,
                edo=report.edo_id,
                failure=report.failure,
            )
        return result


def build_coordinator(
    config: HeartbeatSettings,
    store: DocumentStore,
    logic_factory: Callable[[CharterDefinition], CharterLogic] | None = None,
) -> HeartbeatCoordinator:
    """Wire the protocol services and one runner per configured charter."""
    registry = CharterRegistry.from_ids(config.charters, gate_owner=config.gate_owner_charter)
    permissions = PermissionEngine.from_definitions(registry.definitions.values())

    gates = BudgetGateService(
        store, permissions, timedelta(seconds=config.gate_staleness_seconds)
    )
    heartbeats = HeartbeatLog(store, permissions)
    decisions = DecisionLog(store, permissions)
    policy = GatePolicy(
        ceilings=ResourceLimits(
            max_tokens_per_charter_run=config.max_tokens_per_charter_run,
            max_tool_calls_per_charter_run=config.max_tool_calls_per_charter_run,
            max_brain_spawns_per_hour=config.max_brain_spawns_per_hour,
        ),
        monitor=BurnRateMonitor(config.burn_warn_ratio, config.burn_critical_ratio),
        allow_runs=config.allow_runs,
        halt_on_critical=config.halt_on_critical,
        critical_cooldown=timedelta(seconds=config.critical_cooldown_seconds),
    )

    if logic_factory is None:
        def logic_factory(definition: CharterDefinition) -> CharterLogic:
            return LLMCharterLogic(definition, model=config.charter_model)

    def runner_for(charter_id: str) -> CharterRunner:
        definition = registry.get(charter_id)
        is_owner = charter_id == registry.gate_owner
        return CharterRunner(
            logic=logic_factory(definition),
            gates=gates,
            heartbeats=heartbeats,
            decisions=decisions,
            cycle_timeout=config.cycle_timeout_seconds,
            conflict_retries=config.conflict_retries,
            gate_policy=policy if is_owner else None,
            watched_charters=registry.ids() if is_owner else (),
        )

    return HeartbeatCoordinator(
        owner=runner_for(registry.gate_owner),
        others=[runner_for(cid) for cid in registry.non_owners()],
    )


async def main(argv: list[str] | None = None) -> None:
    """Main orchestrator loop."""
    parser = argparse.ArgumentParser(description="Governance heartbeat orchestrator")
    parser.add_argument("--once", action="store_true", help="Run a single round and exit")
    args = parser.parse_args(argv)

    configure_logging()
    log = structlog.get_logger()

    log.info(
        "governance_heartbeat.orchestrator.starting",
        store_backend=settings.store_backend,
        charters=settings.charters,
        gate_owner=settings.gate_owner_charter,
    )

    store = open_store(settings)
    coordinator = build_coordinator(settings, store)

    # Share the open store with the dashboard when both run in one process
    from governance_heartbeat.dashboard.app import state as dashboard_state

    dashboard_state.bind(store, settings)

    log.info(
        "governance_heartbeat.orchestrator.running",
        gate_owner=coordinator.owner.charter_id,
        charters=[coordinator.owner.charter_id] + [r.charter_id for r in coordinator.others],
    )

    try:
        while True:
            is_valid, commits, msg = store.verify_history()
            if not is_valid:
                log.critical(
                    "governance_heartbeat.orchestrator.integrity_failure",
                    message=msg,
                    commits=commits,
                )
                sys.exit(1)

            result = await coordinator.run_round()
            if result.fatal:
                log.critical(
                    "governance_heartbeat.orchestrator.fatal_round",
                    charters=sorted(result.fatal),
                )
                sys.exit(1)
            if args.once:
                break
            await asyncio.sleep(settings.cycle_interval_seconds)

    except KeyboardInterrupt:
        log.info("governance_heartbeat.orchestrator.shutdown")
    except Exception as e:
        log.exception("governance_heartbeat.orchestrator.fatal_error", error=str(e))
        sys.exit(1)


def run() -> None:
    """Console-script entrypoint."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
