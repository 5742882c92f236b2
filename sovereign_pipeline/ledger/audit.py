"""
Audit Chain Tool — Independent integrity verification of a jurisdiction's chain.

Connects directly to the ledger database and recomputes every hash in the
chain, verifying that no decision record has been retroactively altered.

Usage:
    python -m sovereign_pipeline.ledger.audit --jurisdiction UAE
    python -m sovereign_pipeline.ledger.audit -j UAE --database-url sqlite:///omega.db
    python -m sovereign_pipeline.ledger.audit -j UAE --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from sovereign_pipeline.config import settings
from sovereign_pipeline.ledger.models import create_ledger_engine
from sovereign_pipeline.ledger.service import AuditLedgerService

console = Console()


def run_audit(database_url: str, jurisdiction: str, verbose: bool = False) -> bool:
    """
    Run a full hash chain integrity audit for one jurisdiction.

    Args:
        database_url: SQLAlchemy connection string.
        jurisdiction: Jurisdiction key whose chain is verified.
        verbose: Print the per-event listing if True.

    Returns:
        True if the chain is valid, False otherwise.
    """
    console.print(f"\n[bold blue]═══ Audit Chain Integrity: {jurisdiction.upper()} ═══[/bold blue]\n")

    service = AuditLedgerService(create_ledger_engine(database_url))

    count = service.count(jurisdiction)
    console.print(f"  Events in chain: [bold]{count}[/bold]")

    if count == 0:
        console.print("[yellow]⚠ Chain is empty — no events to verify[/yellow]")
        return True

    console.print("  Verifying hash chain...", end=" ")
    start_time = time.time()
    result = service.verify(jurisdiction)
    elapsed = time.time() - start_time

    if result.is_valid:
        console.print("[bold green]✓ VALID[/bold green]")
        console.print(f"  Events verified: [bold]{count}[/bold]")
        console.print(f"  Verification time: {elapsed:.3f}s")
    else:
        console.print("[bold red]✗ INVALID[/bold red]")
        console.print(f"  Chain broken at index: {result.broken_at}")

    if verbose:
        console.print("\n[bold]Detailed Event Listing:[/bold]")
        table = Table(show_lines=True)
        table.add_column("#", style="cyan", width=6)
        table.add_column("Stage", style="green", width=12)
        table.add_column("Event", style="yellow", width=24)
        table.add_column("Hash (first 16)", style="dim", width=18)
        table.add_column("Timestamp", width=16)

        for index, event in enumerate(service.events(jurisdiction)):
            marker = " ✗" if result.broken_at == index else ""
            table.add_row(
                f"{index}{marker}",
                event.stage,
                event.event or "—",
                event.hash[:16] + "...",
                str(event.timestamp),
            )
        console.print(table)

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return result.is_valid


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Sovereign Decision Pipeline audit chain integrity verifier"
    )
    parser.add_argument(
        "--jurisdiction", "-j",
        default=settings.default_jurisdiction,
        help="Jurisdiction whose chain to verify",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed event listing",
    )
    args = parser.parse_args()

    db_url = args.database_url or settings.database_url
    is_valid = run_audit(db_url, args.jurisdiction, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
