"""
Governance Store Audit Tool — Independent integrity verification.

Recomputes every commit hash in the document store, checks that the
current documents match the head of the chain, and checks that the
decision index and the decision records are in exact correspondence.

Usage:
    python -m governance_heartbeat.store.audit
    python -m governance_heartbeat.store.audit --store-root .governance
    python -m governance_heartbeat.store.audit --database-url sqlite:///governance.db
    python -m governance_heartbeat.store.audit --verbose

Exits 0 when both checks pass, 1 otherwise.
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from governance_heartbeat.charters.registry import CharterRegistry
from governance_heartbeat.config import HeartbeatSettings, settings
from governance_heartbeat.governance.decision_log import DecisionLog
from governance_heartbeat.governance.permissions import PermissionEngine
from governance_heartbeat.store.base import DocumentStore
from governance_heartbeat.store.factory import open_store

console = Console()


def run_audit(store: DocumentStore, config: HeartbeatSettings = settings, verbose: bool = False) -> bool:
    """
    Run a full store integrity audit.

    Args:
        store: The document store to verify.
        config: Settings used to resolve the charter roster.
        verbose: Print the decision records if True.

    Returns:
        True if the commit chain and the decision log are both valid.
    """
    console.print("\n[bold blue]═══ Governance Store Integrity Audit ═══[/bold blue]\n")

    console.print("  Verifying commit chain...", end=" ")
    start_time = time.time()
    history_valid, commits_checked, message = store.verify_history()
    elapsed = time.time() - start_time

    if history_valid:
        console.print("[bold green]✓ VALID[/bold green]")
        console.print(f"  Commits verified: [bold]{commits_checked}[/bold]")
        console.print(f"  Verification time: {elapsed:.3f}s")
    else:
        console.print("[bold red]✗ INVALID[/bold red]")
        console.print(f"  Failure at commit: {commits_checked}")
        console.print(f"  Reason: {message}")

    registry = CharterRegistry.from_ids(config.charters, gate_owner=config.gate_owner_charter)
    decisions = DecisionLog(store, PermissionEngine.from_definitions(registry.definitions.values()))

    console.print("  Checking decision index...", end=" ")
    edo_valid, edo_message = decisions.check_consistency()
    if edo_valid:
        console.print("[bold green]✓ CONSISTENT[/bold green]")
    else:
        console.print("[bold red]✗ CORRUPT[/bold red]")
    console.print(f"  {edo_message}")

    if verbose and edo_valid:
        console.print("\n[bold]Decision Records:[/bold]")
        table = Table(show_lines=True)
        table.add_column("ID", style="cyan", width=12)
        table.add_column("Charter", style="yellow", width=16)
        table.add_column("Chosen", style="green", width=30)
        table.add_column("Alternatives", width=8)
        table.add_column("Status", width=8)
        table.add_column("Created", width=20)

        for record in decisions.list_edos():
            table.add_row(
                record.id,
                record.charter_id,
                record.chosen,
                str(len(record.alternatives_considered)),
                record.status.value,
                record.created_at.isoformat()[:19],
            )
        console.print(table)

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return history_valid and edo_valid


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Governance heartbeat store integrity auditor")
    backend = parser.add_mutually_exclusive_group()
    backend.add_argument(
        "--store-root",
        default=None,
        help="Audit a file store at this directory",
    )
    backend.add_argument(
        "--database-url",
        default=None,
        help="Audit a SQL store at this connection string",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show the decision records",
    )
    args = parser.parse_args(argv)

    config = settings
    if args.store_root:
        config = settings.model_copy(update={"store_backend": "file", "store_root": args.store_root})
    elif args.database_url:
        config = settings.model_copy(update={"store_backend": "sql", "database_url": args.database_url})

    is_valid = run_audit(open_store(config), config, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
