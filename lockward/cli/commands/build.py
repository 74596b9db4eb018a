"""``lockward build`` — resolve a lock manifest and run the gated build.

Resolution errors stop before any fetch (exit 2). A failed build prints the
first failing node in topological order (exit 1).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lockward.config import settings
from lockward.core.artifact_store import ContentAddressedStore
from lockward.core.attestation import attest
from lockward.core.build_ledger import BuildLedger
from lockward.core.errors import ResolutionError
from lockward.core.fetcher import HttpFetcher
from lockward.core.manifest_resolver import ManifestResolver
from lockward.core.orchestrator import BuildOrchestrator
from lockward.core.production_guard import (
    ProductionConfigError,
    enforce_production_constraints,
)
from lockward.core.sandbox import Sandbox, isolation_backend
from lockward.models.build import BuildResult

console = Console()


def build_cmd(
    manifest: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="Lock manifest (lockward manifest or package-lock.json).",
    ),
    store_dir: Optional[Path] = typer.Option(
        None, "--store", "-s", help="Artifact store directory."
    ),
    ledger_db: Optional[Path] = typer.Option(
        None, "--ledger", "-l", help="Build ledger SQLite database."
    ),
    no_ledger: bool = typer.Option(
        False, "--no-ledger", help="Do not record the run in the build ledger."
    ),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-j", min=1, help="Worker pool size."
    ),
    fail_closed: Optional[bool] = typer.Option(
        None,
        "--fail-closed/--no-fail-closed",
        help="Cancel the whole build on the first failure.",
    ),
    sign: bool = typer.Option(
        False, "--sign", help="Write a signed attestation for a successful build."
    ),
    attestation_out: Optional[Path] = typer.Option(
        None, "--attestation-out", help="Where to write the attestation JSON."
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Print the build result as JSON."
    ),
) -> None:
    """Verify and build every dependency pinned by MANIFEST."""
    overrides = {
        "store_path": store_dir,
        "ledger_path": ledger_db,
        "concurrency": concurrency,
        "fail_closed": fail_closed,
    }
    cfg = settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})

    try:
        enforce_production_constraints(cfg)
    except ProductionConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2)

    if sign and not cfg.attestation_signing_key:
        console.print("[red]--sign needs LOCKWARD_ATTESTATION_SIGNING_KEY.[/red]")
        raise typer.Exit(code=2)

    try:
        graph = ManifestResolver().resolve(manifest)
    except ResolutionError as exc:
        console.print(f"[red]Resolution failed ({type(exc).__name__}):[/red] {exc}")
        raise typer.Exit(code=2)

    store = ContentAddressedStore(cfg.store_path)
    ledger = None if no_ledger else BuildLedger(cfg.ledger_path)
    sandbox = Sandbox(
        store,
        backend=isolation_backend(cfg.sandbox_backend),
        default_timeout_s=cfg.sandbox_timeout_s,
    )
    with HttpFetcher(timeout_s=cfg.fetch_timeout_s) as fetcher:
        orchestrator = BuildOrchestrator(
            store,
            fetcher,
            sandbox,
            concurrency=cfg.concurrency,
            fail_closed=cfg.fail_closed,
            ledger=ledger,
        )
        result = orchestrator.build(graph)

    if json_output:
        typer.echo(result.model_dump_json(indent=2))
    else:
        render_result(result, node_count=len(graph))

    if not result.success:
        raise typer.Exit(code=1)

    if sign:
        attestation = attest(result, cfg.attestation_signing_key)
        target = attestation_out or Path(f"{result.run_id}.attestation.json")
        target.write_text(attestation.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"[green]Attestation written to[/green] {target}")


def render_result(result: BuildResult, node_count: int) -> None:
    """Print a build result as a Rich panel plus sandbox and warning details."""
    if result.success:
        lines = [
            "[bold green]Build verified.[/bold green]",
            "",
            f"[bold]Run ID:[/bold]       {result.run_id}",
            f"[bold]Nodes:[/bold]        {node_count}",
            f"[bold]Verified:[/bold]     {len(result.verified_digests)} artifact(s)",
            f"[bold]Root digest:[/bold]  {result.root_digest}",
        ]
        style = "green"
    else:
        lines = [
            "[bold red]Build failed.[/bold red]",
            "",
            f"[bold]Run ID:[/bold]        {result.run_id}",
            f"[bold]Failing node:[/bold]  {result.failing_node}",
            f"[bold]Error:[/bold]         {result.error_kind.value if result.error_kind else '-'}",
            f"[bold]Detail:[/bold]        {result.error_message}",
            f"[bold]Verified:[/bold]      {len(result.verified_digests)} artifact(s) before failure",
        ]
        style = "red"

    console.print()
    console.print(
        Panel("\n".join(lines), title="[bold]Lockward[/bold]", border_style=style, padding=(1, 2))
    )

    if result.sandbox_records:
        table = Table(title="Sandbox Records")
        table.add_column("Artifact", style="cyan")
        table.add_column("Phase")
        table.add_column("Status")
        table.add_column("Exit", justify="right")
        table.add_column("Outputs", justify="right")
        table.add_column("Denied writes")
        for record in result.sandbox_records:
            color = "green" if record.status.ok else "red"
            table.add_row(
                record.artifact_digest[:19],
                record.phase,
                f"[{color}]{record.status.value}[/{color}]",
                "-" if record.exit_code is None else str(record.exit_code),
                str(len(record.declared_writes)),
                ", ".join(record.denied_writes) or "-",
            )
        console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
