"""Formulary CLI — Typer-based command-line interface.

Provides the ``formulary`` command with subcommands to install, upgrade,
roll back, uninstall and inspect formulas in a namespace prefix.

All output uses Rich for formatted terminal display.
"""
