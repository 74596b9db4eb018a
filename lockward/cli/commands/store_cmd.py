"""``lockward store`` — inspect and maintain the content-addressed store."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from lockward.config import settings
from lockward.core.artifact_store import ContentAddressedStore

console = Console()

store_app = typer.Typer(
    name="store",
    help="Inspect and maintain the artifact store.",
    no_args_is_help=True,
)

_STORE_OPTION = typer.Option(None, "--store", "-s", help="Artifact store directory.")


def _open(store_dir: Optional[Path]) -> ContentAddressedStore:
    return ContentAddressedStore(store_dir or settings.store_path)


@store_app.command(name="ls", help="List stored artifacts and registered roots.")
def store_ls_cmd(store_dir: Optional[Path] = _STORE_OPTION) -> None:
    store = _open(store_dir)
    table = Table(title=f"Artifact Store — {store.base_path}")
    table.add_column("Digest", style="cyan")
    table.add_column("Size", justify="right")
    count = 0
    for digest in store.digests():
        ref = store.ref(digest)
        table.add_row(digest.short(24), f"{ref.size_bytes:,}")
        count += 1
    console.print(table)

    roots = store.roots()
    console.print(f"[bold]{count}[/bold] artifact(s), [bold]{len(roots)}[/bold] root(s)")
    for root in roots:
        console.print(f"  root {root.name[:16]}  {len(root.digests)} digest(s)  {root.registered_at:%Y-%m-%d %H:%M}")


@store_app.command(name="verify", help="Re-hash every stored artifact.")
def store_verify_cmd(store_dir: Optional[Path] = _STORE_OPTION) -> None:
    store = _open(store_dir)
    checked = 0
    corrupted: list[str] = []
    for digest in store.digests():
        checked += 1
        if not store.verify(digest):
            corrupted.append(digest.address)
            console.print(f"[red]CORRUPTED[/red] {digest.address}")

    if corrupted:
        console.print(f"[red]{len(corrupted)} of {checked} artifact(s) failed re-hashing.[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]All {checked} artifact(s) match their addresses.[/green]")


@store_app.command(name="gc", help="Remove artifacts unreachable from any root.")
def store_gc_cmd(
    store_dir: Optional[Path] = _STORE_OPTION,
    drop_root: list[str] = typer.Option(
        [], "--drop-root", help="Forget this root before collecting (repeatable)."
    ),
) -> None:
    store = _open(store_dir)
    for name in drop_root:
        if not store.drop_root(name):
            console.print(f"[yellow]No such root:[/yellow] {name}")
    removed = store.collect_garbage()
    for digest in removed:
        console.print(f"[dim]removed[/dim] {digest.address}")
    console.print(f"[bold]{len(removed)}[/bold] artifact(s) removed.")
