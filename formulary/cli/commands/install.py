"""``formulary install`` and ``formulary upgrade``.

Both resolve a plan, apply it in dependency order and run each committed
formula's post-install test. Exit codes: 0 success, 1 resolution, fetch,
digest or IO error, 2 test failure with artifacts left installed.
"""

from __future__ import annotations

from pathlib import Path

import typer

from formulary.cli.runtime import build_engine, console, exit_with, print_report


def install_cmd(
    names: list[str] = typer.Argument(
        ...,
        help="Formula name(s) to install.",
    ),
    version: str = typer.Option(
        None,
        "--version",
        "-v",
        help="Install this exact version (single name only).",
    ),
    formulae: Path = typer.Option(
        None,
        "--formulae",
        "-f",
        help="Directory of JSON formula manifests.",
    ),
    prefix: Path = typer.Option(
        None,
        "--prefix",
        "-p",
        help="Namespace root to install into.",
    ),
) -> None:
    """Install formulas and their dependencies."""
    if version and len(names) != 1:
        console.print("[bold red]--version requires exactly one formula name.[/bold red]")
        raise typer.Exit(code=1)

    engine = build_engine(formulae, prefix)
    requests = [(names[0], version)] if version else list(names)
    report = engine.install(requests)
    print_report(report)
    exit_with(report)


def upgrade_cmd(
    name: str = typer.Argument(
        ...,
        help="Installed formula to upgrade.",
    ),
    formulae: Path = typer.Option(
        None,
        "--formulae",
        "-f",
        help="Directory of JSON formula manifests.",
    ),
    prefix: Path = typer.Option(
        None,
        "--prefix",
        "-p",
        help="Namespace root.",
    ),
) -> None:
    """Upgrade an installed formula to its current version.

    Does nothing (exit 0) when it is already current.
    """
    engine = build_engine(formulae, prefix)
    report = engine.upgrade(name)
    print_report(report)
    exit_with(report)
