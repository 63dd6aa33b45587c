"""``formulary rollback`` and ``formulary uninstall``."""

from __future__ import annotations

from pathlib import Path

import typer

from formulary.cli.runtime import build_engine, exit_with, print_outcome


def rollback_cmd(
    name: str = typer.Argument(
        ...,
        help="Formula to roll back to its previously installed version.",
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
    """Restore the previous version's artifacts and install record.

    Exits 3 when no prior version exists.
    """
    engine = build_engine(formulae, prefix)
    report = engine.rollback(name)
    print_outcome(report)
    exit_with(report)


def uninstall_cmd(
    name: str = typer.Argument(
        ...,
        help="Formula to remove.",
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
    """Remove every linked path, keg and record of a formula."""
    engine = build_engine(formulae, prefix)
    report = engine.uninstall(name)
    print_outcome(report)
    exit_with(report)
