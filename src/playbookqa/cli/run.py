"""playbookqa run -- Execute a playbook against the iOS Simulator.

This is the primary command. It resolves config, loads and validates the
playbook, wires the simctl-backed ``ios.*`` actions into the runner and
displays live Rich output with one line per step and a summary panel.

Exit codes: 0 passed, 1 failed, 2 config/load/validation error,
3 infrastructure error.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from playbookqa.config import PlaybookQAConfig, PlaybookQAConfigError
from playbookqa.engine.context import PlaybookRunResult, StepEvent
from playbookqa.engine.playbook_loader import Playbook, PlaybookLoadError, load_playbook, validate_playbook
from playbookqa.engine.report_generator import format_duration, format_playbook_result_as_json
from playbookqa.engine.runner import PlaybookRunner, validate_inputs

console = Console(stderr=True)
output_console = Console()  # stdout for machine-readable output

logger = logging.getLogger("playbookqa.cli.run")


def _config_error(message: str, title: str = "Config Error") -> typer.Exit:
    console.print(Panel(f"[red]{escape(message)}[/red]", title=f"[red]{title}[/red]", border_style="red"))
    return typer.Exit(code=2)


def _resolve_project_dir(explicit: Path | None = None) -> Path:
    """Find the .playbookqa/ project directory, searching upward from cwd."""
    if explicit is not None:
        project_dir = explicit.resolve()
        if project_dir.name != ".playbookqa" and (project_dir / ".playbookqa").is_dir():
            project_dir = project_dir / ".playbookqa"
        return project_dir

    current = Path.cwd()
    candidate = current / ".playbookqa"
    if candidate.is_dir():
        return candidate

    for parent in current.parents:
        candidate = parent / ".playbookqa"
        if candidate.is_dir():
            return candidate

    return current / ".playbookqa"


def _build_config(project_dir: Path) -> PlaybookQAConfig:
    """Load config.yaml when the project has one, otherwise project defaults."""
    config_path = project_dir / "config.yaml"
    if config_path.is_file():
        return PlaybookQAConfig.from_file(config_path)
    return PlaybookQAConfig.for_project(project_dir)


def _parse_inputs(pairs: list[str], inputs_file: Path | None) -> dict[str, Any]:
    """Merge ``--inputs-file`` with ``-i key=value`` pairs (pairs win)."""
    inputs: dict[str, Any] = {}

    if inputs_file is not None:
        try:
            data = yaml.safe_load(inputs_file.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise _config_error(f"Could not read inputs file {inputs_file}: {exc}")
        if not isinstance(data, dict):
            raise _config_error(f"Inputs file must be a mapping: {inputs_file}")
        inputs.update(data)

    for pair in pairs:
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise _config_error(f"Invalid input '{pair}'. Expected key=value")
        try:
            inputs[key] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            inputs[key] = raw
    return inputs


def _load(playbook: str, config: PlaybookQAConfig) -> Playbook:
    try:
        return load_playbook(playbook, config.playbooks_dir)
    except PlaybookLoadError as exc:
        raise _config_error(str(exc), title="Playbook Error")


def _print_run_header(loaded: Playbook, session: str, device: str | None, dry_run: bool) -> None:
    info_lines = [
        f"[bold]Playbook:[/bold]  {escape(loaded.name)}",
        f"[bold]Version:[/bold]   {loaded.version or '-'}",
        f"[bold]Session:[/bold]   {escape(session)}",
        f"[bold]Device:[/bold]    {escape(device or 'auto')}",
        f"[bold]Dry run:[/bold]   {dry_run}",
    ]
    console.print()
    console.print(Panel("\n".join(info_lines), title="[bold cyan]PlaybookQA Run[/bold cyan]", border_style="cyan"))
    console.print()


def _step_label(event: StepEvent) -> str:
    return escape(event.step.name or event.step.action or f"Step {event.index + 1}")


def _print_step_event(event: StepEvent) -> None:
    """Print one line per finished or skipped step."""
    if event.type == "start":
        return
    label = _step_label(event)
    if event.type == "skip":
        console.print(f"  [dim]-[/dim] {label}  [dim]SKIP  {escape(event.skip_reason or '')}[/dim]")
        return

    duration = format_duration(event.duration or 0)
    if event.type == "complete":
        console.print(f"  [bold green]✓[/bold green] {label}  [green]PASS[/green]  [dim]{duration}[/dim]")
        return

    console.print(f"  [bold red]✗[/bold red] {label}  [red]FAIL[/red]  [dim]{duration}[/dim]")
    if event.error:
        error_short = event.error if len(event.error) <= 120 else event.error[:117] + "..."
        console.print(f"    [dim red]{escape(error_short)}[/dim red]")


def _print_dry_run(result: PlaybookRunResult) -> None:
    for step in result.step_results:
        console.print(f"  [dim]-[/dim] {escape(step.name)}  [dim]{escape(step.action or '')}[/dim]")


def _print_summary_panel(result: PlaybookRunResult) -> None:
    """Print the final summary panel."""
    if result.passed:
        border = "green"
        verdict = "[bold green]PLAYBOOK PASSED[/bold green]"
    else:
        border = "red"
        verdict = "[bold red]PLAYBOOK FAILED[/bold red]"

    summary_lines = [
        verdict,
        "",
        f"  Steps:     {result.steps_passed}/{result.steps_executed} passed",
        f"  Failed:    {result.steps_failed}",
        f"  Skipped:   {result.steps_skipped}",
        f"  Duration:  {format_duration(result.total_duration)}",
    ]
    if result.artifacts_dir:
        summary_lines.append(f"  Artifacts: {escape(result.artifacts_dir)}")
    if result.error:
        summary_lines += ["", f"[red]{escape(result.error)}[/red]"]

    console.print()
    console.print(Panel("\n".join(summary_lines), border_style=border))
    console.print()


# ── CLI command ───────────────────────────────────────────────────────────


def run(
    playbook: str = typer.Argument(..., help="Playbook name (under playbooks/) or path to a .yaml file."),
    input: Optional[list[str]] = typer.Option(
        None,
        "--input",
        "-i",
        help="Playbook input as key=value. Values are parsed as YAML. Repeatable.",
    ),
    inputs_file: Optional[Path] = typer.Option(
        None,
        "--inputs-file",
        help="YAML or JSON file with playbook inputs.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate and list steps without executing them."),
    continue_on_error: bool = typer.Option(
        False,
        "--continue-on-error",
        help="Keep running after a failed step.",
    ),
    step_timeout: Optional[int] = typer.Option(
        None,
        "--step-timeout",
        help="Per-step timeout in milliseconds.",
        min=1,
    ),
    session: str = typer.Option("default", "--session", help="Session ID used to group run artifacts."),
    device: Optional[str] = typer.Option(None, "--device", help="Simulator UDID. Defaults to config or auto."),
    bundle_id: Optional[str] = typer.Option(None, "--bundle-id", help="App bundle ID for ios.* actions."),
    output_format: str = typer.Option("text", "--output", "-o", help="Output format: text or json."),
    dir: Optional[Path] = typer.Option(
        None,
        "--dir",
        "-d",
        help="PlaybookQA project directory. Defaults to auto-detected .playbookqa/ from cwd.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run a playbook and report per-step results.

    \b
    Examples:
      playbookqa run Regression-Check -i bundle_id=com.example.app
      playbookqa run ./smoke.yaml --dry-run
      playbookqa run Crash-Hunt --inputs-file inputs.yaml --output json
    """
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s  %(message)s")

    if output_format not in ("text", "json"):
        raise _config_error(f"Invalid output format: {output_format}\n\nValid formats: text, json")

    project_dir = _resolve_project_dir(dir)
    try:
        config = _build_config(project_dir)
    except PlaybookQAConfigError as exc:
        raise _config_error(str(exc))

    # CLI options override config file values
    if step_timeout is not None:
        config.step_timeout_ms = step_timeout
    if continue_on_error:
        config.continue_on_error = True
    if device:
        config.device_id = device
    if bundle_id:
        config.bundle_id = bundle_id

    inputs = _parse_inputs(input or [], inputs_file)
    loaded = _load(playbook, config)

    validation = validate_playbook(loaded, allow_empty=True)
    input_errors = validate_inputs(inputs, loaded.inputs)
    if validation.errors or input_errors:
        raise _config_error("\n".join(validation.errors + input_errors), title="Validation Error")
    for warning in validation.warnings:
        logger.debug("Validation warning: %s", warning)

    actions = None
    if not dry_run:
        from playbookqa.engine.assertions import device_actions
        from playbookqa.engine.simulator import SimctlController

        if shutil.which("xcrun") is None:
            console.print("[yellow]Warning: xcrun not found. ios.* actions will fail on this host.[/yellow]")
        controller = SimctlController(
            device_id=config.device_id,
            device_name=config.device_name,
            os_version=config.os_version,
        )
        actions = device_actions(controller, polling=config.polling_defaults(), bundle_id=config.bundle_id)

    text_mode = output_format == "text"
    if text_mode:
        _print_run_header(loaded, session, config.device_id, dry_run)

    runner = PlaybookRunner(config, actions)
    try:
        result = asyncio.run(
            runner.run(
                loaded,
                inputs,
                session_id=session,
                dry_run=dry_run,
                on_step=_print_step_event if text_mode else None,
            )
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Run interrupted by user.[/yellow]")
        raise typer.Exit(code=1)
    except Exception as exc:
        logger.exception("Unexpected error during run")
        console.print(
            Panel(
                f"[red]Unexpected error:[/red] {escape(str(exc))}\n\n"
                "Run with [bold]--verbose[/bold] for full traceback.",
                title="[red]Infrastructure Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=3)

    if text_mode:
        if dry_run:
            _print_dry_run(result)
        _print_summary_panel(result)
    else:
        output_console.print(format_playbook_result_as_json(result), markup=False, highlight=False, soft_wrap=True)

    # Exit code: 0 = pass, 1 = fail
    if not result.passed:
        raise typer.Exit(code=1)
