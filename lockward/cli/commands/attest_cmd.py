"""``lockward check-attestation`` — verify a signed build attestation."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console

from lockward.config import settings
from lockward.core.attestation import verify_attestation
from lockward.models.attestation import BuildAttestation

console = Console()


def check_attestation_cmd(
    file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="Attestation JSON file."
    ),
    verify_key: Optional[str] = typer.Option(
        None,
        "--verify-key",
        "-k",
        help="Hex Ed25519 public key (default: LOCKWARD_ATTESTATION_VERIFY_KEY).",
    ),
) -> None:
    """Exit 0 if FILE is signed by the trusted key, 1 if not, 2 on bad input."""
    key = verify_key or settings.attestation_verify_key
    if not key:
        console.print("[red]No verify key: pass --verify-key or set LOCKWARD_ATTESTATION_VERIFY_KEY.[/red]")
        raise typer.Exit(code=2)

    try:
        attestation = BuildAttestation.model_validate_json(file.read_text(encoding="utf-8"))
    except ValidationError as exc:
        console.print(f"[red]Not a build attestation:[/red] {exc.error_count()} error(s)")
        raise typer.Exit(code=2)

    if attestation.verify_key != key:
        # The embedded key is informational; only the trusted key decides
        console.print("[yellow]Attestation names a different signer key.[/yellow]")

    if not verify_attestation(attestation, key):
        console.print(f"[red]INVALID[/red] {file} (run {attestation.run_id})")
        raise typer.Exit(code=1)
    console.print(
        f"[green]VALID[/green] run {attestation.run_id} root {attestation.root_digest} "
        f"({len(attestation.verified_digests)} verified digest(s))"
    )
