"""
Activity Feed Integrity Check — Recompute each family's hash chain.

An operator tool: it reports whether any feed entry was altered after it
was written, and nothing about what the entries say. Showing the feed to
family members is the job of the app, not this command.

Usage:
    python -m family_compact.ledger.audit --family-id fam-1
    python -m family_compact.ledger.audit --family-id fam-1 --family-id fam-2
    python -m family_compact.ledger.audit --family-id fam-1 --database-url postgresql://...

Exits 0 when every chain verifies and 1 otherwise.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass

from rich.console import Console
from rich.table import Table

from family_compact.config import settings
from family_compact.ledger.models import create_store_engine, initialize
from family_compact.ledger.service import AuditLedger

console = Console()


@dataclass
class ChainCheck:
    """Outcome of verifying one family's feed."""

    family_id: str
    entries: int
    valid: bool
    checked: int
    message: str


def run_audit(ledger: AuditLedger, family_id: str) -> ChainCheck:
    """Verify one family's chain. An empty feed counts as valid."""
    entries = ledger.get_entry_count(family_id)
    if entries == 0:
        return ChainCheck(family_id, 0, True, 0, "Feed is empty")

    valid, checked, message = ledger.verify_chain(family_id)
    return ChainCheck(family_id, entries, valid, checked, message)


def render_report(checks: list[ChainCheck]) -> None:
    table = Table(title="Activity feed integrity", show_lines=False)
    table.add_column("Family", style="cyan")
    table.add_column("Entries", justify="right")
    table.add_column("Result")
    table.add_column("Detail", style="dim")

    for check in checks:
        if check.valid:
            result = "[bold green]✓ VALID[/bold green]"
            detail = check.message if check.entries == 0 else f"{check.checked} verified"
        else:
            result = "[bold red]✗ INVALID[/bold red]"
            detail = f"entry {check.checked}: {check.message}"
        table.add_row(check.family_id, str(check.entries), result, detail)

    console.print(table)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Family Compact activity feed integrity check")
    parser.add_argument(
        "--family-id",
        action="append",
        required=True,
        dest="family_ids",
        help="Family whose feed to verify (repeatable)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to .env settings)",
    )
    args = parser.parse_args(argv)

    engine = create_store_engine(args.database_url or settings.database_url)
    initialize(engine)
    ledger = AuditLedger(engine)

    checks = [run_audit(ledger, family_id) for family_id in args.family_ids]
    render_report(checks)
    sys.exit(0 if all(check.valid for check in checks) else 1)


if __name__ == "__main__":
    main()
