"""playbookqa list -- Show the playbooks available in the project."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from playbookqa.cli.run import _build_config, _resolve_project_dir
from playbookqa.config import PlaybookQAConfigError
from playbookqa.engine.playbook_loader import list_playbooks

console = Console()


def list_command(
    dir: Optional[Path] = typer.Option(
        None,
        "--dir",
        "-d",
        help="PlaybookQA project directory. Defaults to auto-detected .playbookqa/ from cwd.",
    ),
) -> None:
    """List playbooks found under the configured playbooks directory."""
    project_dir = _resolve_project_dir(dir)
    try:
        config = _build_config(project_dir)
    except PlaybookQAConfigError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="[red]Config Error[/red]", border_style="red"))
        raise typer.Exit(code=2)

    playbooks = list_playbooks(config.playbooks_dir)
    if not playbooks:
        console.print(
            Panel(
                f"[yellow]No playbooks found.[/yellow]\n\nLooked in: {config.playbooks_dir}",
                title="No Playbooks",
                border_style="yellow",
            )
        )
        return

    table = Table(title="Playbooks", border_style="cyan")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Built-in")
    table.add_column("Description")
    for info in playbooks:
        description = info.description or ""
        if len(description) > 60:
            description = description[:57] + "..."
        table.add_row(info.id, info.name, info.version or "-", "yes" if info.built_in else "", description)
    console.print(table)
