"""Main Typer application — imports and registers all CLI commands.

Entry point: ``lockward`` (configured via pyproject.toml project.scripts).

Commands: build, coverage, verify, store (ls/verify/gc), audit,
check-attestation, demo.
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from lockward.cli.commands.attest_cmd import check_attestation_cmd
from lockward.cli.commands.audit import audit_cmd
from lockward.cli.commands.build import build_cmd
from lockward.cli.commands.coverage import coverage_cmd
from lockward.cli.commands.demo import demo_cmd
from lockward.cli.commands.store_cmd import store_app
from lockward.cli.commands.verify_cmd import verify_cmd
from lockward.config import settings

app = typer.Typer(
    name="lockward",
    help="Lockward: dependency integrity verification and hermetic build gate.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build", help="Verify and build a lock manifest.")(build_cmd)
app.command(name="coverage", help="Report integrity coverage of a lock manifest.")(coverage_cmd)
app.command(name="verify", help="Check a local file against an integrity string.")(verify_cmd)
app.command(name="audit", help="Show and verify a build run's ledger.")(audit_cmd)
app.command(
    name="check-attestation", help="Verify a signed build attestation."
)(check_attestation_cmd)
app.command(name="demo", help="Simulate supply-chain attacks against a scratch store.")(demo_cmd)
app.add_typer(store_app, name="store")


@app.callback()
def configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Configure logging for every command."""
    level = logging.DEBUG if verbose else settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
