"""PlaybookQA Step Engine -- executes step lists against an ExecutionContext.

Steps run strictly one at a time.  Results are appended to a shared list in
execution order: a loop's nested results come first, followed by the loop's
own result, and ``on_failure`` results always follow the step that failed.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import re
import time
from typing import Any

from playbookqa.engine.context import ExecutionContext, LoopFrame, StepEvent, StepResult
from playbookqa.engine.expressions import MISSING, evaluate_condition, resolve_object, resolve_value
from playbookqa.engine.playbook_loader import StepDef
from playbookqa.engine.protocols import ActionOutcome
from playbookqa.models import DEFAULT_LOOP_TIMEOUT_MS, DEFAULT_LOOP_VARIABLE

logger = logging.getLogger("playbookqa.engine.step_engine")

_TIMEOUT_RE = re.compile(r"^(\d+)(s|m|ms)?$")
_RANGE_RE = re.compile(r"range\((\d+)\)")


@dataclasses.dataclass
class ListOutcome:
    """Whether a step list ran to completion."""

    success: bool
    error: str | None = None


def _ms_since(start: float) -> float:
    return (time.monotonic() - start) * 1000


def _loop_snapshot(context: ExecutionContext) -> dict[str, Any] | None:
    frame = context.current_loop
    return frame.snapshot() if frame else None


def parse_timeout(value: Any) -> int:
    """Parse ``"300s"``, ``"5m"``, ``"500ms"`` or a bare number into milliseconds.

    A bare number string is seconds; an int or float is already milliseconds.
    Anything unparseable falls back to the default loop timeout.
    """
    if isinstance(value, bool) or value is None or value is MISSING:
        return DEFAULT_LOOP_TIMEOUT_MS
    if isinstance(value, (int, float)):
        return int(value)
    match = _TIMEOUT_RE.match(str(value).strip())
    if not match:
        return DEFAULT_LOOP_TIMEOUT_MS
    number = int(match.group(1))
    unit = match.group(2) or "s"
    if unit == "ms":
        return number
    if unit == "m":
        return number * 60_000
    return number * 1000


# ---------------------------------------------------------------------------
# Step lists
# ---------------------------------------------------------------------------

async def execute_steps(
    context: ExecutionContext,
    steps: tuple[StepDef, ...] | list[StepDef],
    results: list[StepResult],
) -> ListOutcome:
    """Run *steps* in order, appending every StepResult to *results*.

    Returns a failing ListOutcome when a step fails and neither the run-wide
    nor the step's own ``continue_on_error`` is set.
    """
    i = 0
    while i < len(steps):
        step = steps[i]
        step_name = step.name or f"Step {i + 1}"

        if step.condition and not evaluate_condition(context, step.condition):
            reason = f"Condition not met: {step.condition}"
            results.append(StepResult.skip(step_name, reason, action=step.action))
            logger.debug("Skipping step %s: %s", step_name, reason)
            context.emit_step(StepEvent(step=step, index=context.current_step_index, type="skip", skip_reason=reason))
            context.current_step_index += 1
            i += 1
            continue

        step_result = await execute_step(context, step, i, results)
        results.append(step_result)

        if not step_result.success and not step_result.skipped:
            if step.on_failure:
                logger.debug("Executing on_failure handlers for %s", step_name)
                failure_results: list[StepResult] = []
                await execute_steps(context, step.on_failure, failure_results)
                results.extend(failure_results)

            if not context.continue_on_error and not step.continue_on_error:
                return ListOutcome(success=False, error=step_result.error)

        # exit_loop / complete_loop end the current loop body
        if context.loop_signal and context.loop_stack:
            return ListOutcome(success=True)

        if step.next:
            target = next((j for j, s in enumerate(steps) if s.name == step.next), None)
            if target is not None:
                logger.debug("Jumping from %s to %s", step_name, step.next)
                i = target
                continue
        i += 1

    return ListOutcome(success=True)


# ---------------------------------------------------------------------------
# Single step
# ---------------------------------------------------------------------------

async def _invoke(handler: Any, context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    outcome = handler(context, inputs, step)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return ActionOutcome.coerce(outcome)


async def execute_step(
    context: ExecutionContext,
    step: StepDef,
    index: int,
    results: list[StepResult] | None = None,
) -> StepResult:
    """Execute one step (action or loop) that already passed its condition.

    A loop step appends its nested results to *results* and returns its own
    summary result for the caller to append.
    """
    start = time.monotonic()
    step_name = step.name or f"Step {index + 1}"

    total = context.total_steps
    percent = min(95.0, 5 + (context.current_step_index / total) * 90) if total else 5.0
    context.emit_progress("executing", f"Executing: {step_name}", percent, step_name=step_name)
    logger.debug("Executing step: %s", step_name)

    if step.is_loop:
        event_index = context.current_step_index
        context.emit_step(StepEvent(step=step, index=event_index, type="start"))
        result = await execute_loop_step(context, step, index, results if results is not None else [])
        context.current_step_index += 1
        context.emit_step(
            StepEvent(
                step=step,
                index=event_index,
                type="complete" if result.success else "error",
                result=result,
                error=result.error,
                duration=result.duration,
            )
        )
        return result

    if not step.action:
        context.current_step_index += 1
        return StepResult(
            name=step_name,
            success=True,
            duration=_ms_since(start),
            skipped=True,
            skip_reason="No action defined",
        )

    resolved_inputs = resolve_object(context, step.inputs)
    event_index = context.current_step_index
    context.emit_step(StepEvent(step=step, index=event_index, type="start", resolved_inputs=resolved_inputs))

    handler = context.actions.get(step.action)
    if handler is None:
        error = f"Unknown action: {step.action}"
        logger.warning("%s", error)
        context.current_step_index += 1
        context.emit_step(StepEvent(step=step, index=event_index, type="error", error=error))
        return StepResult(
            name=step_name,
            action=step.action,
            success=False,
            error=error,
            duration=_ms_since(start),
        )

    timeout_ms = context.step_timeout_ms
    try:
        outcome = await asyncio.wait_for(
            _invoke(handler, context, resolved_inputs, step),
            timeout=timeout_ms / 1000 if timeout_ms else None,
        )
    except asyncio.TimeoutError:
        outcome = ActionOutcome(success=False, error=f"Step '{step_name}' timed out after {timeout_ms}ms")
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.debug("Action %s raised: %s", step.action, exc, exc_info=True)
        outcome = ActionOutcome(success=False, error=str(exc) or type(exc).__name__)

    duration = _ms_since(start)

    if step.store_as and outcome.data is not None:
        context.outputs[step.store_as] = outcome.data

    context.current_step_index += 1
    context.emit_step(
        StepEvent(
            step=step,
            index=event_index,
            type="complete" if outcome.success else "error",
            resolved_inputs=resolved_inputs,
            error=outcome.error,
            duration=duration,
        )
    )

    return StepResult(
        name=step_name,
        action=step.action,
        success=outcome.success,
        result=outcome.data,
        error=outcome.error,
        duration=duration,
        loop_context=_loop_snapshot(context),
    )


# ---------------------------------------------------------------------------
# Loops
# ---------------------------------------------------------------------------

def _loop_items(context: ExecutionContext, loop_expr: Any) -> list[Any]:
    resolved = resolve_value(context, loop_expr)
    if resolved is MISSING:
        resolved = None
    if isinstance(resolved, (list, tuple)):
        return list(resolved)
    if isinstance(resolved, str) and resolved.startswith("range("):
        match = _RANGE_RE.search(resolved)
        return list(range(int(match.group(1)))) if match else []
    return [resolved]


async def _run_iteration(
    context: ExecutionContext,
    step: StepDef,
    frame: LoopFrame,
    results: list[StepResult],
) -> ListOutcome:
    context.loop_stack.append(frame)
    context.variables[frame.as_] = frame.item
    try:
        return await execute_steps(context, step.steps, results)
    finally:
        context.loop_stack.pop()
        context.variables.pop(frame.as_, None)


async def execute_loop_step(
    context: ExecutionContext,
    step: StepDef,
    index: int,
    results: list[StepResult],
) -> StepResult:
    """Run a ``loop`` or ``loop_until`` step's body once per iteration."""
    start = time.monotonic()
    step_name = step.name or f"Loop {index + 1}"
    loop_var = step.as_ or DEFAULT_LOOP_VARIABLE

    logger.debug("Starting loop: %s", step_name)

    if not step.steps:
        return StepResult(
            name=step_name,
            success=True,
            duration=_ms_since(start),
            skipped=True,
            skip_reason="No nested steps in loop",
        )

    results_before = len(results)
    outcome = ListOutcome(success=True)
    iterations = 0

    if step.loop_until is not None:
        until = step.loop_until
        timeout_ms = parse_timeout(resolve_value(context, until.timeout))
        loop_start = time.monotonic()
        while _ms_since(loop_start) < timeout_ms:
            if until.or_ and evaluate_condition(context, until.or_):
                logger.debug("Loop %s escape condition met", step_name)
                break
            frame = LoopFrame(as_=loop_var, item=iterations, index=iterations, total=-1)
            outcome = await _run_iteration(context, step, frame, results)
            iterations += 1
            signal, context.loop_signal = context.loop_signal, None
            if not outcome.success or signal == "break":
                break
    else:
        items = _loop_items(context, step.loop)
        for i, item in enumerate(items):
            frame = LoopFrame(as_=loop_var, item=item, index=i, total=len(items))
            outcome = await _run_iteration(context, step, frame, results)
            iterations += 1
            signal, context.loop_signal = context.loop_signal, None
            if not outcome.success or signal == "break":
                break

    return StepResult(
        name=step_name,
        action="loop",
        success=outcome.success,
        result={"iterations": iterations, "nested_results": len(results) - results_before},
        error=outcome.error,
        duration=_ms_since(start),
        loop_context=_loop_snapshot(context),
    )
