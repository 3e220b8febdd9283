"""PlaybookQA Runner -- the main coordinator for playbook runs.

Loads the playbook, validates and defaults its inputs, builds the
ExecutionContext, drives the step engine, assembles the PlaybookRunResult and
persists it under the run's artifact directory.  ``run`` never raises for
load, validation or execution problems: a failed run is still a full result.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from playbookqa.config import PlaybookQAConfig
from playbookqa.engine.context import (
    ExecutionContext,
    PlaybookRunResult,
    ProgressCallback,
    ProgressEvent,
    StepCallback,
    StepResult,
    now_ms,
)
from playbookqa.engine.playbook_loader import InputDef, Playbook, PlaybookLoadError, StepDef, load_playbook
from playbookqa.engine.protocols import ActionHandler
from playbookqa.engine.registry import ActionRegistry, builtin_registry
from playbookqa.engine.report_generator import (
    format_duration,
    format_playbook_result,
    format_playbook_result_as_text,
    json_default,
)
from playbookqa.engine.step_engine import execute_steps

logger = logging.getLogger("playbookqa.engine.runner")


# ---------------------------------------------------------------------------
# Input handling
# ---------------------------------------------------------------------------

def _type_matches(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, (list, tuple))
    if expected == "object":
        return isinstance(value, Mapping)
    return True


def validate_inputs(inputs: Mapping[str, Any], input_defs: Mapping[str, InputDef]) -> list[str]:
    """Check provided inputs against declarations.  Returns error messages."""
    errors: list[str] = []
    for key, input_def in input_defs.items():
        if input_def.required and key not in inputs and not input_def.has_default:
            errors.append(f"Required input '{key}' is missing")
        if key in inputs and input_def.type and not _type_matches(inputs[key], input_def.type):
            article = "an" if input_def.type[0] in "aeiou" else "a"
            errors.append(f"Input '{key}' must be {article} {input_def.type}")
    return errors


def apply_input_defaults(inputs: Mapping[str, Any], input_defs: Mapping[str, InputDef]) -> dict[str, Any]:
    """Provided inputs plus declared defaults for the ones not provided."""
    result = dict(inputs)
    for key, input_def in input_defs.items():
        if key not in result and input_def.has_default:
            result[key] = input_def.default
    return result


def count_steps(steps: tuple[StepDef, ...] | list[StepDef]) -> int:
    """Every step plus all nested loop-body and on_failure steps."""
    return sum(1 + count_steps(step.steps) + count_steps(step.on_failure) for step in steps)


def dry_run_results(steps: tuple[StepDef, ...] | list[StepDef], prefix: str = "") -> list[StepResult]:
    """One skipped StepResult per step, flattened through nested steps."""
    results: list[StepResult] = []
    for index, step in enumerate(steps):
        name = step.name or f"{prefix}{'Loop' if step.is_loop else 'Step'} {index + 1}"
        results.append(StepResult.skip(name, "Dry run", action="loop" if step.is_loop else step.action))
        results.extend(dry_run_results(step.steps, prefix=f"{name} > "))
        results.extend(dry_run_results(step.on_failure, prefix=f"{name} > "))
    return results


def sanitize_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "-", name).lower()


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class PlaybookRunner:
    """Coordinates a complete playbook run."""

    def __init__(
        self,
        config: PlaybookQAConfig,
        actions: Mapping[str, ActionHandler] | ActionRegistry | None = None,
    ) -> None:
        """
        Args:
            config: PlaybookQAConfig with directories and run defaults.
            actions: Extra action handlers, layered over the built-ins.
        """
        self._config = config
        self._actions = builtin_registry()
        if actions:
            self._actions.merge(actions)

    @property
    def actions(self) -> ActionRegistry:
        return self._actions

    async def run(
        self,
        playbook: str | Path | Playbook,
        inputs: Mapping[str, Any] | None = None,
        *,
        session_id: str = "default",
        dry_run: bool = False,
        continue_on_error: bool | None = None,
        step_timeout_ms: int | None = None,
        cwd: Path | None = None,
        on_progress: ProgressCallback | None = None,
        on_step: StepCallback | None = None,
    ) -> PlaybookRunResult:
        """Run a playbook by name, path, or already-loaded Playbook.

        Args:
            playbook: Name under ``playbooks_dir``, a ``.yaml`` path, or a Playbook.
            inputs: Values for the playbook's declared inputs.
            session_id: Groups run artifacts under ``artifacts_dir/<session_id>``.
            dry_run: Validate and report every step as skipped without executing.
            continue_on_error: Run-wide override of the config default.
            step_timeout_ms: Per-step timeout override.
            cwd: Value of the ``cwd`` template accessor.
            on_progress: Receives ProgressEvent notifications.
            on_step: Receives StepEvent notifications.

        Returns:
            PlaybookRunResult.  Failures are reported through ``passed`` and
            ``error``, never raised.
        """
        inputs = dict(inputs or {})
        start = now_ms()
        started = time.monotonic()
        logger.info("Starting playbook: %s", playbook.name if isinstance(playbook, Playbook) else playbook)

        _notify(on_progress, "initializing", 0, 0, "Initializing playbook run", 0)

        if isinstance(playbook, Playbook):
            loaded = playbook
        else:
            try:
                loaded = load_playbook(playbook, self._config.playbooks_dir)
            except PlaybookLoadError as exc:
                logger.error("Failed to load playbook: %s", exc)
                error = f"Failed to load playbook: {exc}"
                _notify(on_progress, "failed", 0, 0, error, 100)
                return _failed_result(str(playbook), error, start, started)

        total_steps = count_steps(loaded.steps)
        _notify(on_progress, "validating", 0, total_steps, f"Validating inputs for {loaded.name}", 2)

        errors = validate_inputs(inputs, loaded.inputs)
        if errors:
            error = f"Invalid inputs: {', '.join(errors)}"
            logger.error("%s", error)
            _notify(on_progress, "failed", 0, total_steps, error, 100)
            return _failed_result(loaded.name, error, start, started, playbook=loaded)

        context = ExecutionContext(
            playbook=loaded,
            actions=self._actions,
            inputs=apply_input_defaults(inputs, loaded.inputs),
            variables=dict(loaded.variables),
            session_id=session_id,
            cwd=cwd or Path.cwd(),
            dry_run=dry_run,
            step_timeout_ms=step_timeout_ms if step_timeout_ms is not None else self._config.step_timeout_ms,
            continue_on_error=(
                continue_on_error if continue_on_error is not None else self._config.continue_on_error
            ),
            on_progress=on_progress,
            on_step=on_step,
            start_time=start,
            total_steps=total_steps,
        )

        if dry_run:
            logger.info("Dry run - validation complete, not executing")
            step_results = dry_run_results(loaded.steps)
            result = self._build_result(context, step_results, True, None, started)
            context.emit_progress("complete", "Dry run complete", 100)
            return result

        context.artifacts_dir = self._prepare_run_dir(session_id, loaded.name)

        context.emit_progress("executing", "Executing playbook steps", 5)
        step_results: list[StepResult] = []
        try:
            outcome = await execute_steps(context, loaded.steps, step_results)
            passed, error = outcome.success, outcome.error
        except Exception as exc:
            logger.error("Playbook execution error: %s", exc, exc_info=True)
            passed, error = False, str(exc)

        result = self._build_result(context, step_results, passed, error, started)
        if context.artifacts_dir is not None:
            self._save_run_artifacts(result, context.artifacts_dir)

        context.current_step_index = total_steps
        context.emit_progress(
            "complete" if passed else "failed",
            (
                f"Playbook completed successfully in {format_duration(result.total_duration)}"
                if passed
                else f"Playbook failed: {error or 'See step results'}"
            ),
            100,
        )
        logger.info(
            "Playbook %s: %d steps in %s",
            "PASSED" if passed else "FAILED",
            result.steps_executed,
            format_duration(result.total_duration),
        )
        return result

    # ── Result assembly ────────────────────────────────────────────────

    @staticmethod
    def _build_result(
        context: ExecutionContext,
        step_results: list[StepResult],
        passed: bool,
        error: str | None,
        started: float,
    ) -> PlaybookRunResult:
        playbook = context.playbook
        return PlaybookRunResult(
            passed=passed,
            playbook_name=playbook.name,
            playbook_version=playbook.version,
            playbook_path=playbook.path,
            steps_executed=sum(1 for s in step_results if not s.skipped),
            steps_passed=sum(1 for s in step_results if s.success and not s.skipped),
            steps_failed=sum(1 for s in step_results if not s.success and not s.skipped),
            steps_skipped=sum(1 for s in step_results if s.skipped),
            total_duration=(time.monotonic() - started) * 1000,
            start_time=context.start_time,
            end_time=now_ms(),
            step_results=step_results,
            final_variables=context.variables,
            final_outputs=context.outputs,
            collected=context.collected,
            artifacts_dir=str(context.artifacts_dir) if context.artifacts_dir else None,
            error=error,
        )

    # ── Artifacts ──────────────────────────────────────────────────────

    def _prepare_run_dir(self, session_id: str, playbook_name: str) -> Path | None:
        run_dir = (
            self._config.artifacts_dir
            / session_id
            / f"playbook-{sanitize_filename(playbook_name)}-{int(now_ms())}"
        )
        try:
            run_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Failed to create artifacts directory %s: %s", run_dir, exc)
            return None
        return run_dir

    @staticmethod
    def _save_run_artifacts(result: PlaybookRunResult, run_dir: Path) -> None:
        """Save the run result as JSON, plain text and markdown artifacts.

        Args:
            result: The finished PlaybookRunResult
            run_dir: Directory to save artifacts to
        """
        try:
            result_path = run_dir / "result.json"
            result_path.write_text(json.dumps(dataclasses.asdict(result), indent=2, default=json_default))
            logger.info("Saved run result JSON to %s", result_path)
        except Exception as exc:
            logger.warning("Failed to save result.json: %s", exc)

        try:
            (run_dir / "summary.txt").write_text(format_playbook_result_as_text(result))
        except Exception as exc:
            logger.warning("Failed to save summary.txt: %s", exc)

        try:
            report_path = run_dir / "report.md"
            report_path.write_text(format_playbook_result(result))
            logger.info("Saved markdown report to %s", report_path)
        except Exception as exc:
            logger.warning("Failed to save report.md: %s", exc)


def _notify(
    on_progress: ProgressCallback | None,
    phase: str,
    step_index: int,
    total_steps: int,
    message: str,
    percent: float,
) -> None:
    logger.debug("Progress: %s - %s", phase, message)
    if on_progress is not None:
        on_progress(
            ProgressEvent(
                phase=phase,
                step_index=step_index,
                total_steps=total_steps,
                message=message,
                percent_complete=percent,
            )
        )


def _failed_result(
    name: str,
    error: str,
    start: float,
    started: float,
    playbook: Playbook | None = None,
) -> PlaybookRunResult:
    return PlaybookRunResult(
        passed=False,
        playbook_name=name,
        playbook_version=playbook.version if playbook else None,
        playbook_path=playbook.path if playbook else None,
        total_duration=(time.monotonic() - started) * 1000,
        start_time=start,
        end_time=now_ms(),
        final_variables=dict(playbook.variables) if playbook else {},
        error=error,
    )


async def run_playbook(
    playbook: str | Path | Playbook,
    config: PlaybookQAConfig,
    inputs: Mapping[str, Any] | None = None,
    actions: Mapping[str, ActionHandler] | ActionRegistry | None = None,
    **options: Any,
) -> PlaybookRunResult:
    """Convenience wrapper: build a PlaybookRunner and run one playbook."""
    return await PlaybookRunner(config, actions).run(playbook, inputs, **options)
