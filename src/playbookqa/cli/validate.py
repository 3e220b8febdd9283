"""playbookqa validate -- Parse and validate a playbook without executing it.

Runs JSON-schema validation on the raw YAML and structural validation on the
loaded playbook, then prints every issue in a table.  Nothing touches the
simulator.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from playbookqa.cli.run import _build_config, _resolve_project_dir
from playbookqa.config import PlaybookQAConfigError
from playbookqa.engine.playbook_loader import (
    Playbook,
    PlaybookLoadError,
    load_playbook_data,
    resolve_playbook_path,
    schema_errors,
    validate_playbook,
)

console = Console(stderr=True)

# ── Severity ordering ─────────────────────────────────────────────────────

_SEVERITY_ORDER = {"error": 0, "warning": 1}


def _sev_style(severity: str) -> str:
    return {"error": "bold red", "warning": "yellow"}.get(severity, "")


# ── Validation helpers ────────────────────────────────────────────────────


def _split_issue(message: str) -> tuple[str, str]:
    """``"steps.0.name: message"`` -> (``"steps.0.name"``, ``"message"``)."""
    location, sep, rest = message.partition(": ")
    if sep and rest:
        return location, rest
    return "", message


def collect_issues(path: Path) -> list[dict[str, Any]]:
    """Validate a playbook file.  Returns a list of issue dicts."""
    issues: list[dict[str, Any]] = []

    try:
        data = load_playbook_data(path)
    except PlaybookLoadError as exc:
        issues.append({"severity": "error", "field": "yaml", "message": str(exc)})
        return issues

    for error in schema_errors(data):
        loc, msg = _split_issue(error)
        issues.append({"severity": "error", "field": f"schema.{loc}", "message": msg})

    try:
        playbook = Playbook.from_dict(data, path=str(path))
    except PlaybookLoadError as exc:
        if not issues:
            issues.append({"severity": "error", "field": "root", "message": str(exc)})
        return issues

    result = validate_playbook(playbook)
    for error in result.errors:
        issues.append({"severity": "error", "field": "", "message": error})
    for warning in result.warnings:
        issues.append({"severity": "warning", "field": "", "message": warning})
    return issues


def _print_issue_table(path: Path, issues: list[dict[str, Any]]) -> None:
    has_errors = any(i["severity"] == "error" for i in issues)
    table = Table(title=f"Issues in {path.name}", border_style="red" if has_errors else "yellow")
    table.add_column("Severity", style="bold")
    table.add_column("Location")
    table.add_column("Message")
    for issue in sorted(issues, key=lambda i: _SEVERITY_ORDER.get(i["severity"], 99)):
        table.add_row(
            Text(issue["severity"].upper(), style=_sev_style(issue["severity"])),
            Text(issue["field"] or "-"),
            Text(issue["message"]),
        )
    console.print(table)


# ── CLI command ───────────────────────────────────────────────────────────


def validate(
    playbook: str = typer.Argument(..., help="Playbook name (under playbooks/) or path to a .yaml file."),
    dir: Optional[Path] = typer.Option(
        None,
        "--dir",
        "-d",
        help="PlaybookQA project directory. Defaults to auto-detected .playbookqa/ from cwd.",
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit 2 on warnings as well as errors.",
    ),
) -> None:
    """Validate a playbook's YAML structure without executing any step.

    \b
    Examples:
      playbookqa validate Regression-Check
      playbookqa validate ./smoke.yaml --strict
    """
    project_dir = _resolve_project_dir(dir)
    try:
        config = _build_config(project_dir)
    except PlaybookQAConfigError as exc:
        console.print(Panel(f"[red]{escape(str(exc))}[/red]", title="[red]Config Error[/red]", border_style="red"))
        raise typer.Exit(code=2)

    path = resolve_playbook_path(playbook, config.playbooks_dir)
    issues = collect_issues(path)
    errors = [i for i in issues if i["severity"] == "error"]
    warnings = [i for i in issues if i["severity"] == "warning"]

    console.print()
    if not issues:
        console.print(f"  [green]✓[/green] [dim]{escape(str(path))}[/dim]  [green]OK[/green]")
        console.print(Panel("[bold green]Playbook valid. No errors or warnings.[/bold green]", border_style="green"))
        return

    _print_issue_table(path, issues)
    console.print()
    if errors:
        console.print(
            Panel(
                f"[bold red]Validation failed.[/bold red]  "
                f"{len(errors)} error(s), {len(warnings)} warning(s)\n\n"
                "Fix the errors above before running the playbook.",
                border_style="red",
            )
        )
        raise typer.Exit(code=2)

    if strict:
        console.print(
            Panel(
                f"[bold yellow]Validation warnings found (--strict mode).[/bold yellow]  {len(warnings)} warning(s)",
                border_style="yellow",
            )
        )
        raise typer.Exit(code=2)

    console.print(
        Panel(
            f"[yellow]Validation passed with {len(warnings)} warning(s).[/yellow]  "
            "Use [bold]--strict[/bold] to fail on warnings.",
            border_style="yellow",
        )
    )
