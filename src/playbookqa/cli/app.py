"""PlaybookQA CLI -- Main Typer entry point.

Registers all subcommands and provides --version / --verbose global options.
"""

from __future__ import annotations

import typer
from rich.console import Console

from playbookqa import __version__

TAGLINE = "YAML playbooks for the iOS Simulator."

console = Console()

# ── Version callback ──────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print("PlaybookQA", style="bold cyan")
        console.print(f"  {TAGLINE}", style="dim")
        console.print(f"  v{__version__}\n", style="bold")
        raise typer.Exit()


# ── Main app ──────────────────────────────────────────────────────────────

app = typer.Typer(
    name="playbookqa",
    help=f"PlaybookQA -- {TAGLINE}",
    rich_markup_mode="rich",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show PlaybookQA version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output.",
    ),
) -> None:
    """PlaybookQA -- run declarative step playbooks against an iOS simulator.

    Conditions, loops, failure handlers and polling assertions, all in YAML.
    """
    if verbose:
        import logging

        logging.basicConfig(level=logging.DEBUG, format="%(name)s  %(message)s")


# ── Register subcommands ──────────────────────────────────────────────────

from playbookqa.cli.list_cmd import list_command  # noqa: E402
from playbookqa.cli.run import run  # noqa: E402
from playbookqa.cli.validate import validate  # noqa: E402

app.command(name="run", help="Run a playbook against the simulator.")(run)
app.command(name="validate", help="Validate a playbook without executing it.")(validate)
app.command(name="list", help="List the playbooks in the project directory.")(list_command)
