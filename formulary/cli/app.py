"""Main Typer application — imports and registers all CLI commands.

Entry point: ``formulary`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

import typer

from formulary import __version__
from formulary.cli.commands.query import info_cmd, list_cmd
from formulary.cli.commands.install import install_cmd, upgrade_cmd
from formulary.cli.commands.rollback import rollback_cmd, uninstall_cmd
from formulary.cli.runtime import console

app = typer.Typer(
    name="formulary",
    help="Formulary: resolve, verify and atomically install formulas.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"formulary {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Print the engine version and exit.",
    ),
) -> None:
    """Formulary: resolve, verify and atomically install formulas."""


# Register subcommands
app.command(name="install", help="Install formulas and their dependencies.")(install_cmd)
app.command(name="upgrade", help="Upgrade an installed formula to its current version.")(upgrade_cmd)
app.command(name="rollback", help="Restore the previously installed version.")(rollback_cmd)
app.command(name="uninstall", help="Remove an installed formula.")(uninstall_cmd)
app.command(name="list", help="List installed formulas.")(list_cmd)
app.command(name="info", help="Show details of a formula.")(info_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
