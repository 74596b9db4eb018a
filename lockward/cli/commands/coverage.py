"""``lockward coverage`` — integrity coverage of a lock manifest."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from lockward.core.errors import ResolutionError
from lockward.core.manifest_resolver import ManifestResolver

console = Console()


def coverage_cmd(
    manifest: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="Lock manifest to audit."
    ),
    strict: bool = typer.Option(
        False, "--strict", help="Exit 1 unless every entry carries a usable digest."
    ),
) -> None:
    """Report which entries are pinned, with which algorithms, and which run scripts."""
    try:
        report = ManifestResolver().coverage(manifest)
    except ResolutionError as exc:
        console.print(f"[red]Cannot read manifest:[/red] {exc}")
        raise typer.Exit(code=2)

    table = Table(title=f"Integrity Coverage — {manifest.name}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Entries", str(report.total_entries))
    table.add_row("With integrity", str(report.with_integrity))
    table.add_row("Missing integrity", str(len(report.missing_integrity)))
    table.add_row("Weak or invalid", str(len(report.weak_or_invalid)))
    table.add_row("Declare install scripts", str(len(report.install_scripts)))
    for algorithm, count in report.algorithms.items():
        table.add_row(f"  {algorithm}", str(count))
    console.print(table)

    for key in report.missing_integrity:
        console.print(f"[red]missing:[/red] {key}")
    for key in report.weak_or_invalid:
        console.print(f"[yellow]weak/invalid:[/yellow] {key}")
    for key in report.install_scripts:
        console.print(f"[dim]install script:[/dim] {key}")

    if report.fully_covered:
        console.print("[green]All entries are pinned by a supported digest.[/green]")
    elif strict:
        raise typer.Exit(code=1)
