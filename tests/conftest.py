"""Shared fixtures for PlaybookQA unit tests."""

from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Any

import pytest
import yaml

from playbookqa.engine.protocols import DeviceResult


# ---------------------------------------------------------------------------
# In-memory device collaborators
# ---------------------------------------------------------------------------

class FakeDevice:
    """DeviceController double that records calls and serves canned data."""

    def __init__(
        self,
        logs: list[Any] | None = None,
        crashes: list[dict[str, Any]] | None = None,
        fail: set[str] | None = None,
    ) -> None:
        self.logs = logs or []
        self.crashes = crashes or []
        self.fail = fail or set()
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def _result(self, name: str, data: Any = None) -> DeviceResult:
        if name in self.fail:
            return DeviceResult(success=False, error=f"{name} failed")
        return DeviceResult(success=True, data=data)

    async def launch_app(self, bundle_id: str) -> DeviceResult:
        self.calls.append(("launch_app", (bundle_id,)))
        return self._result("launch_app", {"bundle_id": bundle_id})

    async def terminate_app(self, bundle_id: str) -> DeviceResult:
        self.calls.append(("terminate_app", (bundle_id,)))
        return self._result("terminate_app", {"bundle_id": bundle_id})

    async def tap(self, x: float, y: float) -> DeviceResult:
        self.calls.append(("tap", (x, y)))
        return self._result("tap")

    async def type_text(self, text: str) -> DeviceResult:
        self.calls.append(("type_text", (text,)))
        return self._result("type_text")

    async def screenshot(self, output_path: Path) -> DeviceResult:
        self.calls.append(("screenshot", (output_path,)))
        return self._result("screenshot", {"path": str(output_path)})

    async def read_logs(self, since: dt.datetime, process: str | None = None) -> DeviceResult:
        self.calls.append(("read_logs", (since, process)))
        return self._result("read_logs", list(self.logs))

    async def crash_reports(self, bundle_id: str, since: dt.datetime) -> DeviceResult:
        self.calls.append(("crash_reports", (bundle_id, since)))
        return self._result("crash_reports", list(self.crashes))


class FakeInspector:
    """UIInspector double.  Serves *trees* in order, repeating the last one."""

    def __init__(self, *trees: dict[str, Any] | None) -> None:
        self.trees = list(trees) or [None]
        self.calls = 0

    async def ui_tree(self) -> DeviceResult:
        tree = self.trees[min(self.calls, len(self.trees) - 1)]
        self.calls += 1
        if tree is None:
            return DeviceResult(success=False, error="No UI tree available")
        return DeviceResult(success=True, data=tree)


def element(**fields: Any) -> dict[str, Any]:
    """A UI element dict with a visible, enabled 100x44 default frame."""
    base: dict[str, Any] = {
        "type": "Button",
        "visible": True,
        "enabled": True,
        "frame": {"x": 20, "y": 100, "width": 100, "height": 44},
    }
    base.update(fields)
    return base


def screen(*children: dict[str, Any]) -> dict[str, Any]:
    """A root Application element holding *children*."""
    return {
        "type": "Application",
        "frame": {"x": 0, "y": 0, "width": 430, "height": 932},
        "children": list(children),
    }


@pytest.fixture
def fake_device() -> FakeDevice:
    return FakeDevice()


# ---------------------------------------------------------------------------
# Fixture: temporary project directory with .playbookqa/ structure
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Create a temporary .playbookqa/ project directory with full structure."""
    project_dir = tmp_path / ".playbookqa"
    for sub in ("playbooks", "artifacts"):
        (project_dir / sub).mkdir(parents=True)

    config_data = {
        "step_timeout_ms": 5000,
        "poll_timeout_ms": 200,
        "poll_interval_ms": 20,
        "simulator": {"device_name": "iPhone 15", "bundle_id": "com.example.app"},
    }
    (project_dir / "config.yaml").write_text(
        yaml.dump(config_data, default_flow_style=False), encoding="utf-8"
    )

    return project_dir


@pytest.fixture
def write_playbook(tmp_project_dir: Path):
    """Write a playbook mapping to ``playbooks/<dir_name>/playbook.yaml``."""

    def _write(dir_name: str, data: dict[str, Any]) -> Path:
        path = tmp_project_dir / "playbooks" / dir_name / "playbook.yaml"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8")
        return path

    return _write


# ---------------------------------------------------------------------------
# Fixture: sample playbook YAML string
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_playbook_yaml() -> str:
    """Return a valid playbook YAML document as a string."""
    return """\
name: Smoke Test
version: 1.2
description: Launch, look around, collect what we saw.
inputs:
  bundle_id:
    type: string
    required: true
  screens:
    type: array
    default: [home, settings]
variables:
  visited: 0
steps:
  - name: Visit screens
    loop: "{{ inputs.screens }}"
    as: screen
    steps:
      - name: Remember screen
        action: collect
        inputs:
          key: screens
          value: "{{ screen }}"
      - action: increment_iteration
  - name: Done
    action: log
    inputs:
      message: "Visited {{ collected.screens | length }} screens"
"""
