"""Helpers shared by the CLI commands: engine construction, logging, rendering."""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from formulary.config import EngineConfig
from formulary.core.engine import Engine
from formulary.core.errors import FormularyError
from formulary.models.results import EngineReport, EntryStatus

console = Console()

_STATUS_STYLE = {
    EntryStatus.COMMITTED: "[green]committed[/green]",
    EntryStatus.SKIPPED: "[dim]skipped[/dim]",
    EntryStatus.FAILED: "[bold red]failed[/bold red]",
    EntryStatus.NOT_ATTEMPTED: "[yellow]not attempted[/yellow]",
}


def configure_logging(level: str) -> None:
    """Route engine logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def build_engine(formulae: Path | None, prefix: Path | None) -> Engine:
    """Create an Engine from env config plus CLI overrides.

    Exits with code 1 when the manifests cannot be loaded.
    """
    overrides: dict[str, Path] = {}
    if formulae is not None:
        if not formulae.is_dir():
            console.print(f"[bold red]Formulae directory not found:[/bold red] {formulae}")
            raise typer.Exit(code=1)
        overrides["formulae_path"] = formulae
    if prefix is not None:
        overrides["prefix"] = prefix
    config = EngineConfig(**overrides)
    configure_logging(config.log_level)
    try:
        return Engine(config)
    except FormularyError as exc:
        console.print(f"[bold red]Could not load formulae:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1)


def print_report(report: EngineReport) -> None:
    """Render an install/upgrade report and its test results."""
    if report.plan is not None and report.plan.entries:
        statuses = {}
        if report.install_result is not None:
            statuses = {o.name: o.status for o in report.install_result.outcomes}
        table = Table(title=f"{report.operation.capitalize()} plan")
        table.add_column("Formula", style="cyan")
        table.add_column("Version", style="green")
        table.add_column("Action")
        table.add_column("Status")
        for entry in report.plan.entries:
            status = statuses.get(entry.formula.name)
            table.add_row(
                entry.formula.name,
                entry.formula.version,
                entry.action.value,
                _STATUS_STYLE[status] if status else "[dim]-[/dim]",
            )
        console.print(table)

        for decision in report.plan.decisions:
            console.print(
                f"[yellow]Selected {decision.name}@{decision.selected}[/yellow] "
                f"[dim]({decision.reason})[/dim]"
            )

    for test in report.test_results:
        if test.passed:
            console.print(f"  [green]PASS[/green] {test.name}@{test.version}")
        else:
            console.print(f"  [bold red]FAIL[/bold red] {test.name}@{test.version}: {escape(test.reason)}")
            if test.stderr.strip():
                console.print(f"[dim]{escape(test.stderr.strip())}[/dim]")

    if report.plan is not None and report.install_result is not None:
        for name in report.install_result.committed:
            caveats = report.plan.entry(name).formula.caveats
            if caveats:
                console.print(Panel(escape(caveats), title=f"{name} caveats", border_style="blue"))

    print_outcome(report)


def print_outcome(report: EngineReport) -> None:
    if report.ok:
        if report.operation == "uninstall" and report.record is not None:
            message = f"Uninstalled {report.record.name} {report.record.version}"
        elif report.record is not None:
            message = f"Rolled back {report.record.name} to {report.record.version}"
        elif report.plan is not None and not report.plan.pending:
            message = f"Nothing to do: {', '.join(report.requested)} already up to date"
        else:
            message = f"{report.operation.capitalize()} of {', '.join(report.requested)} succeeded"
        console.print(f"[bold green]{message}[/bold green]")
        return
    console.print(
        Panel(
            f"[bold red]{report.error_kind}[/bold red]: {escape(report.error)}",
            title=f"{report.operation} failed (exit {report.exit_code})",
            border_style="red",
        )
    )


def exit_with(report: EngineReport) -> None:
    raise typer.Exit(code=report.exit_code)
