"""``lockward audit RUN_ID`` — replay a build run from the ledger.

Prints every recorded node transition and sandbox record, then verifies the
run's hash chain. Exit code 1 if the chain is broken or the run is unknown.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from lockward.config import settings
from lockward.core.build_ledger import BuildLedger, LedgerIntegrityError

console = Console()


def audit_cmd(
    run_id: Optional[str] = typer.Argument(
        None, help="Build run to audit. Omit to list recorded runs."
    ),
    ledger_db: Optional[Path] = typer.Option(
        None, "--ledger", "-l", help="Build ledger SQLite database."
    ),
) -> None:
    """Show a run's ledger entries and verify its hash chain."""
    db_path = ledger_db or settings.ledger_path
    if not db_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)
    ledger = BuildLedger(db_path)

    if run_id is None:
        for rid in ledger.get_all_run_ids():
            console.print(rid)
        return

    entries = ledger.get_run_entries(run_id)
    if not entries:
        console.print(f"[bold red]No entries for run:[/bold red] {run_id}")
        raise typer.Exit(code=1)

    table = Table(title=f"Build Ledger — {run_id}")
    table.add_column("Time", style="dim")
    table.add_column("Node", style="cyan")
    table.add_column("Transition")
    table.add_column("Digest")
    table.add_column("Detail")
    for entry in entries:
        detail = ", ".join(f"{k}={v}" for k, v in sorted(entry.detail.items()) if v not in ("", [], {}, None))
        table.add_row(
            f"{entry.timestamp_utc:%H:%M:%S.%f}"[:-3],
            entry.node,
            entry.state_transition,
            entry.digest[:19],
            detail,
        )
    console.print(table)

    try:
        ledger.verify_chain(run_id)
    except LedgerIntegrityError as exc:
        console.print(f"[bold red]Hash chain BROKEN:[/bold red] {exc}")
        raise typer.Exit(code=1)
    anchor = ledger.export_anchor(run_id)
    console.print(
        f"[green]Hash chain intact[/green] ({anchor['entry_count']} entries, "
        f"head {anchor['root_hash'][:16]})"
    )
