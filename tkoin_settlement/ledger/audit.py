"""
Ledger audit — the append-only audit trail and an independent reconciliation tool.

``AuditSink`` writes one ``AuditLog`` row per state change, inside the same
transaction as the change itself, so a rolled-back operation leaves no audit
record behind.

The command-line tool reconciles agent balances against open orders:

Usage:
    python -m tkoin_settlement.ledger.audit
    python -m tkoin_settlement.ledger.audit --database-url postgresql://...
    python -m tkoin_settlement.ledger.audit --verbose
"""

from __future__ import annotations

import argparse
import sys
import time
from typing import Any

from rich.console import Console
from rich.table import Table
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from tkoin_settlement.domain.schema import ActorType
from tkoin_settlement.domain.units import base_units_to_tokens
from tkoin_settlement.ledger.models import Agent, AuditLog

console = Console()


class AuditSink:
    """Appends audit records within the caller's transaction."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.SessionLocal = session_factory

    def record(
        self,
        session: Session,
        event_type: str,
        entity_type: str,
        entity_id: str,
        actor_id: str | None = None,
        actor_type: ActorType = ActorType.SYSTEM,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            actor_id=actor_id,
            actor_type=ActorType(actor_type).value,
            metadata_=metadata or {},
        )
        session.add(entry)
        session.flush()
        return entry

    def entries_for(self, entity_type: str, entity_id: str) -> list[AuditLog]:
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditLog)
                    .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
                    .order_by(AuditLog.id)
                ).scalars().all()
            )

    def entries_by_type(self, event_type: str, limit: int = 100) -> list[AuditLog]:
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditLog)
                    .where(AuditLog.event_type == event_type)
                    .order_by(AuditLog.id.desc())
                    .limit(limit)
                ).scalars().all()
            )


def run_audit(database_url: str, verbose: bool = False) -> bool:
    """
    Reconcile every agent's balances against its open orders.

    Returns:
        True if the ledger is consistent, False otherwise.
    """
    from tkoin_settlement.ledger.service import LedgerService

    console.print("\n[bold blue]═══ Tkoin Ledger Reconciliation ═══[/bold blue]")
    console.print("[dim]0 <= locked <= total, and locked == sum of open order locks[/dim]\n")

    service = LedgerService.from_url(database_url)

    console.print("  Reconciling agents...", end=" ")
    start_time = time.time()
    report = service.verify_integrity()
    elapsed = time.time() - start_time

    if report.is_valid:
        console.print("[bold green]✓ CONSISTENT[/bold green]")
    else:
        console.print("[bold red]✗ DISCREPANCIES FOUND[/bold red]")
        for line in report.discrepancies:
            console.print(f"    [red]•[/red] {line}")
    console.print(f"  Agents checked: [bold]{report.agents_checked}[/bold]")
    console.print(f"  Reconciliation time: {elapsed:.3f}s")

    if verbose:
        console.print("\n[bold]Agent Balances:[/bold]")
        table = Table(show_lines=True)
        table.add_column("Agent", style="cyan", width=24)
        table.add_column("Tier", style="green", width=10)
        table.add_column("Total (TKOIN)", justify="right", width=20)
        table.add_column("Locked (TKOIN)", justify="right", width=20)
        table.add_column("Available (TKOIN)", justify="right", width=20)

        with service.SessionLocal() as session:
            for agent in session.execute(select(Agent).order_by(Agent.id)).scalars():
                table.add_row(
                    agent.id,
                    agent.verification_tier,
                    str(base_units_to_tokens(agent.tkoin_balance)),
                    str(base_units_to_tokens(agent.locked_balance)),
                    str(base_units_to_tokens(agent.tkoin_balance - agent.locked_balance)),
                )
        console.print(table)

    console.print("\n[bold blue]═══ Reconciliation Complete ═══[/bold blue]\n")
    return report.is_valid


def main() -> None:
    from tkoin_settlement.config import settings

    parser = argparse.ArgumentParser(description="Tkoin ledger reconciliation")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show per-agent balances",
    )
    args = parser.parse_args()

    db_url = args.database_url or settings.database_url
    is_valid = run_audit(db_url, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
