"""PlaybookQA configuration management."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from playbookqa.models import (
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_POLL_TIMEOUT_MS,
    DEFAULT_STEP_TIMEOUT_MS,
)

if TYPE_CHECKING:
    from playbookqa.engine.verification import PollingOptions


class PlaybookQAConfigError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


@dataclass
class PlaybookQAConfig:
    """Configuration for a PlaybookQA run."""

    # Paths
    project_dir: Path = field(default_factory=lambda: Path(".playbookqa"))
    playbooks_dir: Path = field(default_factory=lambda: Path(".playbookqa/playbooks"))
    artifacts_dir: Path = field(default_factory=lambda: Path(".playbookqa/artifacts"))

    # Execution
    step_timeout_ms: int = DEFAULT_STEP_TIMEOUT_MS
    continue_on_error: bool = False

    # Verification polling
    poll_timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS

    # Simulator
    device_id: str | None = None  # Simulator UDID
    device_name: str = "iPhone 15 Pro"
    os_version: str | None = None  # e.g. "17.2"
    bundle_id: str | None = None  # e.g. "com.example.myapp"

    @classmethod
    def from_file(cls, config_path: Path) -> PlaybookQAConfig:
        """Load config from a YAML file."""
        if not config_path.exists():
            raise PlaybookQAConfigError(
                f"Config file not found: {config_path}\n\nTo fix: create {config_path.name} in your .playbookqa/ directory"
            )
        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise PlaybookQAConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PlaybookQAConfigError(f"Config file must be a YAML mapping: {config_path}")
        return cls._from_dict(data, config_path.parent)

    @classmethod
    def for_project(cls, project_dir: Path) -> PlaybookQAConfig:
        """Build a default config rooted at *project_dir* (no config file)."""
        return cls._from_dict({}, project_dir)

    @classmethod
    def _from_dict(cls, data: dict[str, Any], project_dir: Path) -> PlaybookQAConfig:
        """Create config from a dictionary."""
        config = cls()
        config.project_dir = project_dir

        # Map YAML keys to config fields
        config.playbooks_dir = project_dir / data.get("playbooks_dir", "playbooks")
        config.artifacts_dir = project_dir / data.get("artifacts_dir", "artifacts")

        try:
            if "step_timeout_ms" in data:
                config.step_timeout_ms = int(data["step_timeout_ms"])
            if "poll_timeout_ms" in data:
                config.poll_timeout_ms = int(data["poll_timeout_ms"])
            if "poll_interval_ms" in data:
                config.poll_interval_ms = int(data["poll_interval_ms"])
        except (TypeError, ValueError) as exc:
            raise PlaybookQAConfigError(f"Timeout values must be integers (milliseconds): {exc}") from exc

        if "continue_on_error" in data:
            config.continue_on_error = bool(data["continue_on_error"])

        simulator = data.get("simulator", {})
        if isinstance(simulator, dict):
            config.device_id = simulator.get("device_id", config.device_id)
            config.device_name = simulator.get("device_name", config.device_name)
            config.os_version = simulator.get("os_version", config.os_version)
            config.bundle_id = simulator.get("bundle_id", config.bundle_id)

        return config

    def polling_defaults(self) -> PollingOptions:
        """Default polling options for assertion actions."""
        from playbookqa.engine.verification import PollingOptions

        return PollingOptions(timeout=self.poll_timeout_ms, poll_interval=self.poll_interval_ms)
