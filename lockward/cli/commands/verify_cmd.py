"""``lockward verify`` — check one local file against an integrity string."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from lockward.core.integrity import IntegrityVerifier
from lockward.models.digest import Digest, InvalidDigestError

console = Console()


def verify_cmd(
    file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="File to check."
    ),
    integrity: str = typer.Argument(
        ..., help="Expected digest: SRI ('sha512-...') or prefixed hex ('sha256:...')."
    ),
) -> None:
    """Exit 0 if FILE hashes to INTEGRITY, 1 on mismatch, 2 on a bad integrity value."""
    try:
        expected = Digest.parse(integrity)
    except InvalidDigestError as exc:
        console.print(f"[red]Unusable integrity value:[/red] {exc}")
        raise typer.Exit(code=2)

    result = IntegrityVerifier().verify(expected, file.read_bytes())
    if result.ok:
        console.print(f"[green]OK[/green] {file} {expected.address}")
        return
    console.print(f"[red]MISMATCH[/red] {file}")
    console.print(f"  expected {result.expected.address}")
    console.print(f"  actual   {result.actual.address}")
    raise typer.Exit(code=1)
