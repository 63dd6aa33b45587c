"""``formulary list`` and ``formulary info`` — read-only views."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.panel import Panel
from rich.table import Table

from formulary.cli.runtime import build_engine, console


def list_cmd(
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
    """List installed formulas."""
    engine = build_engine(formulae, prefix)
    records = engine.installed()
    if not records:
        console.print("[dim]No formulas installed.[/dim]")
        return

    table = Table(title=f"Installed in {engine.config.prefix}")
    table.add_column("Name", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Digest")
    table.add_column("Paths", justify="right")
    table.add_column("Installed")
    for record in records.values():
        table.add_row(
            record.name,
            record.version,
            record.digest[:12],
            str(len(record.installed_paths)),
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def info_cmd(
    name: str = typer.Argument(
        ...,
        help="Formula to describe.",
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
    """Show known versions, dependencies and install state of a formula."""
    engine = build_engine(formulae, prefix)
    if name not in engine.store:
        console.print(f"[bold red]Unknown formula:[/bold red] {name}")
        raise typer.Exit(code=1)

    formula = engine.store.current(name)
    record = engine.records.get(name)
    history = engine.records.history(name)

    lines = [f"[bold cyan]{formula.name}[/bold cyan] {formula.version}"]
    if formula.desc:
        lines.append(formula.desc)
    if formula.homepage:
        lines.append(f"[dim]{formula.homepage}[/dim]")
    lines.append("")
    lines.append(f"Versions:     {', '.join(engine.store.versions(name))}")
    lines.append(f"Dependencies: {', '.join(formula.dependencies) or '-'}")
    if formula.license:
        lines.append(f"License:      {formula.license}")
    if record is None:
        lines.append("Installed:    [yellow]no[/yellow]")
    else:
        lines.append(f"Installed:    [green]{record.version}[/green] ({len(record.installed_paths)} paths)")
        if history is not None and history.previous:
            lines.append(f"Rollback to:  {', '.join(r.version for r in history.previous)}")
    if formula.caveats:
        lines.extend(["", "[bold]Caveats[/bold]", formula.caveats])

    console.print(Panel("\n".join(lines), title="Formula", border_style="cyan"))
