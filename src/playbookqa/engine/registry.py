"""Action registry and the built-in playbook actions.

Handlers are async callables ``(context, inputs, step) -> ActionOutcome``.
Lookup tries the exact name, then the ``ios.``-namespaced alias.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any

from playbookqa.engine.protocols import ActionHandler, ActionOutcome
from playbookqa.models import ACTION_NAMESPACE

if TYPE_CHECKING:
    from playbookqa.engine.context import ExecutionContext
    from playbookqa.engine.playbook_loader import StepDef

logger = logging.getLogger("playbookqa.engine.registry")


class ActionRegistry:
    """Name-keyed table of action handlers."""

    def __init__(self, handlers: Mapping[str, ActionHandler] | None = None) -> None:
        self._handlers: dict[str, ActionHandler] = dict(handlers or {})

    def register(self, name: str, handler: ActionHandler) -> None:
        if name in self._handlers:
            logger.debug("Overriding action handler: %s", name)
        self._handlers[name] = handler

    def merge(self, handlers: Mapping[str, ActionHandler] | ActionRegistry) -> ActionRegistry:
        """Add *handlers*, replacing same-named entries.  Returns self."""
        items = handlers._handlers if isinstance(handlers, ActionRegistry) else handlers
        for name, handler in items.items():
            self.register(name, handler)
        return self

    def get(self, name: str) -> ActionHandler | None:
        """Exact name first, then the ``ios.`` alias."""
        handler = self._handlers.get(name)
        if handler is None:
            handler = self._handlers.get(f"{ACTION_NAMESPACE}.{name}")
        return handler

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


# ---------------------------------------------------------------------------
# Control flow
# ---------------------------------------------------------------------------

async def complete_loop(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    """End the current loop iteration."""
    if context.loop_stack:
        context.loop_signal = "continue"
    logger.debug("complete_loop action called")
    return ActionOutcome(success=True, data={"action": "complete_loop"})


async def exit_loop(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    """Leave the innermost loop."""
    reason = inputs.get("reason")
    if context.loop_stack:
        context.loop_signal = "break"
    logger.debug("exit_loop action called: %s", reason or "No reason")
    return ActionOutcome(success=True, data={"action": "exit_loop", "reason": reason})


async def increment_iteration(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    iteration = context.variables.get("iteration") or 0
    context.variables["iteration"] = iteration + 1
    return ActionOutcome(success=True, data={"iteration": context.variables["iteration"]})


async def wait(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    seconds = inputs.get("seconds")
    if seconds is None:
        seconds = 1
    try:
        seconds = float(seconds)
    except (TypeError, ValueError):
        return ActionOutcome(success=False, error=f"Invalid wait duration: {seconds!r}")
    if not context.dry_run and seconds > 0:
        await asyncio.sleep(seconds)
    return ActionOutcome(success=True, data={"waited": seconds})


async def set_variable(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    name = inputs.get("name")
    if not name:
        return ActionOutcome(success=False, error="set_variable requires a 'name' input")
    context.variables[name] = inputs.get("value")
    return ActionOutcome(success=True, data={name: context.variables[name]})


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

async def report_status(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    logger.info("Status: passed=%s, failed=%s", inputs.get("passed"), inputs.get("failed"))
    return ActionOutcome(success=True, data={"reported": True})


_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


async def log(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    message = inputs.get("message", "")
    level = str(inputs.get("level", "info")).lower()
    logger.log(_LOG_LEVELS.get(level, logging.INFO), "%s", message)
    return ActionOutcome(success=True, data={"message": message, "level": level})


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------

async def record_diff(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    context.collect("diffs", {"flow": inputs.get("flow"), "diffs": inputs.get("diffs")})
    return ActionOutcome(success=True, data={"recorded": True})


async def record_crash(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    context.collect("crashes", dict(inputs))
    return ActionOutcome(success=True, data={"recorded": True})


async def collect(context: ExecutionContext, inputs: dict[str, Any], step: StepDef) -> ActionOutcome:
    key = inputs.get("key")
    if not key:
        return ActionOutcome(success=False, error="collect requires a 'key' input")
    context.collect(key, inputs.get("value"))
    return ActionOutcome(success=True, data={"key": key, "count": len(context.collected[key])})


BUILTIN_ACTIONS: dict[str, ActionHandler] = {
    "complete_loop": complete_loop,
    "exit_loop": exit_loop,
    "increment_iteration": increment_iteration,
    "wait": wait,
    "set_variable": set_variable,
    "report_status": report_status,
    "log": log,
    "record_diff": record_diff,
    "record_crash": record_crash,
    "collect": collect,
}


def builtin_registry() -> ActionRegistry:
    """A fresh registry holding only the built-in actions."""
    return ActionRegistry(BUILTIN_ACTIONS)
