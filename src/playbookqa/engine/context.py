"""Execution state and result types for a playbook run.

``ExecutionContext`` is the single mutable object threaded through one run.
It is created fresh per invocation and passed by reference to every step and
action handler; nothing here is module-global.
"""

from __future__ import annotations

import dataclasses
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from playbookqa.models import DEFAULT_STEP_TIMEOUT_MS

if TYPE_CHECKING:
    from playbookqa.engine.playbook_loader import Playbook, StepDef
    from playbookqa.engine.registry import ActionRegistry


def now_ms() -> float:
    """Wall-clock milliseconds since the epoch."""
    return time.time() * 1000


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class LoopFrame:
    """One active loop iteration."""

    as_: str
    item: Any
    index: int
    total: int  # -1 for loop_until
    start_time: float = dataclasses.field(default_factory=now_ms)

    def snapshot(self) -> dict[str, Any]:
        return {"as": self.as_, "item": self.item, "index": self.index, "total": self.total}


@dataclasses.dataclass
class ProgressEvent:
    """Run-level progress notification."""

    phase: str  # initializing, validating, executing, complete, failed
    step_index: int
    total_steps: int
    message: str
    percent_complete: float
    step_name: str | None = None
    elapsed: float | None = None
    loop: dict[str, Any] | None = None


@dataclasses.dataclass
class StepEvent:
    """Per-step lifecycle notification."""

    step: StepDef
    index: int
    type: str  # start, complete, skip, error
    resolved_inputs: dict[str, Any] | None = None
    result: StepResult | None = None
    error: str | None = None
    skip_reason: str | None = None
    duration: float | None = None


@dataclasses.dataclass
class StepResult:
    """Outcome of one executed (or skipped) step.

    A skipped step always has ``success=True``.
    """

    name: str
    success: bool
    duration: float = 0.0
    action: str | None = None
    result: Any = None
    error: str | None = None
    skipped: bool = False
    skip_reason: str | None = None
    loop_context: dict[str, Any] | None = None

    @classmethod
    def skip(cls, name: str, reason: str, action: str | None = None) -> StepResult:
        return cls(name=name, action=action, success=True, skipped=True, skip_reason=reason)


@dataclasses.dataclass
class PlaybookRunResult:
    """Aggregate result of a playbook run."""

    passed: bool
    playbook_name: str
    steps_executed: int = 0
    steps_passed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    total_duration: float = 0.0
    start_time: float = 0.0
    end_time: float = 0.0
    step_results: list[StepResult] = dataclasses.field(default_factory=list)
    final_variables: dict[str, Any] = dataclasses.field(default_factory=dict)
    final_outputs: dict[str, Any] = dataclasses.field(default_factory=dict)
    collected: dict[str, list[Any]] = dataclasses.field(default_factory=dict)
    playbook_version: str | None = None
    playbook_path: str | None = None
    artifacts_dir: str | None = None
    error: str | None = None


ProgressCallback = Callable[[ProgressEvent], None]
StepCallback = Callable[[StepEvent], None]


@dataclasses.dataclass
class ExecutionContext:
    """Mutable state for one playbook run."""

    playbook: Playbook
    actions: ActionRegistry
    inputs: dict[str, Any] = dataclasses.field(default_factory=dict)
    variables: dict[str, Any] = dataclasses.field(default_factory=dict)
    outputs: dict[str, Any] = dataclasses.field(default_factory=dict)
    collected: dict[str, list[Any]] = dataclasses.field(default_factory=dict)
    session_id: str = "default"
    artifacts_dir: Path | None = None
    cwd: Path = dataclasses.field(default_factory=Path.cwd)

    # Run-wide settings
    dry_run: bool = False
    step_timeout_ms: int = DEFAULT_STEP_TIMEOUT_MS
    continue_on_error: bool = False

    # Callbacks
    on_progress: ProgressCallback | None = None
    on_step: StepCallback | None = None

    # Loop and progress state
    loop_stack: list[LoopFrame] = dataclasses.field(default_factory=list)
    loop_signal: str | None = None  # "break" or "continue", set by exit_loop / complete_loop
    current_step_index: int = 0
    total_steps: int = 0
    start_time: float = dataclasses.field(default_factory=now_ms)

    @property
    def current_loop(self) -> LoopFrame | None:
        return self.loop_stack[-1] if self.loop_stack else None

    def collect(self, key: str, value: Any) -> None:
        """Append *value* to the named collected list."""
        self.collected.setdefault(key, []).append(value)

    def elapsed_ms(self) -> float:
        return now_ms() - self.start_time

    def emit_progress(self, phase: str, message: str, percent: float, step_name: str | None = None) -> None:
        if self.on_progress is None:
            return
        frame = self.current_loop
        self.on_progress(
            ProgressEvent(
                phase=phase,
                step_index=self.current_step_index,
                total_steps=self.total_steps,
                step_name=step_name,
                message=message,
                percent_complete=percent,
                elapsed=self.elapsed_ms(),
                loop=frame.snapshot() if frame else None,
            )
        )

    def emit_step(self, event: StepEvent) -> None:
        if self.on_step is not None:
            self.on_step(event)
