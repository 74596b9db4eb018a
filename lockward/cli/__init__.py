"""Lockward CLI — Typer-based command-line interface.

Provides the ``lockward`` command with subcommands for building a lock
manifest, reporting integrity coverage, checking single files, maintaining
the artifact store, auditing past runs and running the attack demo.

All output uses Rich for formatted terminal display.
"""
