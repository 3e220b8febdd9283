"""Engine extension-point protocols.

These protocols define the contract between PlaybookQA's execution engine and
the host-provided collaborators it drives: action handlers (the engine's only
point of external effect), the device controller that talks to a simulator,
and the UI inspector that returns the accessibility tree.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from playbookqa.engine.context import ExecutionContext
    from playbookqa.engine.playbook_loader import StepDef


@dataclasses.dataclass
class ActionOutcome:
    """What an action handler reports back to the step engine."""

    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def coerce(cls, value: Any) -> ActionOutcome:
        """Accept an ActionOutcome or a ``{success, data?, error?}`` mapping."""
        if isinstance(value, ActionOutcome):
            return value
        if isinstance(value, Mapping) and "success" in value:
            return cls(
                success=bool(value["success"]),
                data=value.get("data"),
                error=value.get("error"),
            )
        raise TypeError(f"Action handler returned {type(value).__name__}, expected ActionOutcome")


@runtime_checkable
class ActionHandler(Protocol):
    """One named capability, invoked with already-resolved inputs."""

    def __call__(
        self,
        context: ExecutionContext,
        inputs: dict[str, Any],
        step: StepDef,
    ) -> Awaitable[ActionOutcome]: ...


@dataclasses.dataclass
class DeviceResult:
    """Result contract for every device controller call."""

    success: bool
    data: Any = None
    error: str | None = None


@runtime_checkable
class DeviceController(Protocol):
    """Simulator control layer.

    SimctlController maps to ``xcrun simctl``; tests use in-memory fakes.
    """

    async def launch_app(self, bundle_id: str) -> DeviceResult: ...

    async def terminate_app(self, bundle_id: str) -> DeviceResult: ...

    async def tap(self, x: float, y: float) -> DeviceResult: ...

    async def type_text(self, text: str) -> DeviceResult: ...

    async def screenshot(self, output_path: Path) -> DeviceResult: ...

    async def read_logs(self, since: dt.datetime, process: str | None = None) -> DeviceResult: ...

    async def crash_reports(self, bundle_id: str, since: dt.datetime) -> DeviceResult: ...


@runtime_checkable
class UIInspector(Protocol):
    """Accessibility-tree source. ``data`` is the root element dict."""

    async def ui_tree(self) -> DeviceResult: ...
