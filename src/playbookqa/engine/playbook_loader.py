"""PlaybookQA Playbook Loader -- load, list, and validate YAML playbooks.

A playbook lives either at an explicit ``*.yaml`` path or in
``<playbooks_dir>/<name>/playbook.yaml``.  Loading produces immutable
``Playbook`` / ``StepDef`` dataclasses; validation reports structural errors
and warnings without executing anything.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft7Validator

from playbookqa.models import BUILTIN_PLAYBOOKS, INPUT_TYPES

logger = logging.getLogger("playbookqa.engine.playbook_loader")

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schemas" / "playbook.schema.json"


class PlaybookLoadError(Exception):
    """Raised when a playbook file is missing or malformed."""

    pass


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class InputDef:
    """Declared playbook input parameter."""

    type: str | None = None  # string, number, boolean, array, object
    required: bool = False
    default: Any = None
    description: str = ""
    has_default: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, key: str = "") -> InputDef:
        data = _mapping(data, f"Input '{key}'" if key else "Input declaration")
        return cls(
            type=data.get("type"),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            description=data.get("description", ""),
            has_default="default" in data,
        )


def _mapping(value: Any, what: str, where: str = "") -> dict[str, Any]:
    """Return *value* as a dict, treating ``None`` as empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PlaybookLoadError(f"{what} must be a mapping, got: {value!r}{where}")
    return value


def _sequence(value: Any, what: str) -> list[Any]:
    """Return *value* as a list, treating ``None`` as empty."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise PlaybookLoadError(f"{what} must be a list, got: {value!r}")
    return value


@dataclasses.dataclass(frozen=True)
class LoopUntil:
    """Condition-driven loop settings."""

    timeout: Any = None  # "300s", "5m", "500ms", or a number of ms
    or_: str | None = None  # escape condition checked before each iteration


@dataclasses.dataclass(frozen=True)
class StepDef:
    """One playbook step: an action dispatch, a control node, or both."""

    name: str | None = None
    action: str | None = None
    inputs: dict[str, Any] = dataclasses.field(default_factory=dict)
    condition: str | None = None
    loop: Any = None
    as_: str | None = None
    loop_until: LoopUntil | None = None
    steps: tuple[StepDef, ...] = ()
    on_failure: tuple[StepDef, ...] = ()
    next: str | None = None
    store_as: str | None = None
    continue_on_error: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepDef:
        if not isinstance(data, dict):
            raise PlaybookLoadError(f"Step must be a mapping, got: {data!r}")

        loop_until = None
        raw_until = data.get("loop_until")
        if isinstance(raw_until, dict):
            loop_until = LoopUntil(timeout=raw_until.get("timeout"), or_=raw_until.get("or"))
        elif raw_until:
            # ``loop_until: true`` -- run until the default timeout or exit_loop
            loop_until = LoopUntil()

        label = data.get("name") or data.get("action") or "?"
        return cls(
            name=data.get("name"),
            action=data.get("action"),
            inputs=dict(_mapping(data.get("inputs"), f"Step '{label}' inputs")),
            condition=data.get("condition"),
            loop=data.get("loop"),
            as_=data.get("as"),
            loop_until=loop_until,
            steps=tuple(cls.from_dict(s) for s in _sequence(data.get("steps"), f"Step '{label}' steps")),
            on_failure=tuple(cls.from_dict(s) for s in _sequence(data.get("on_failure"), f"Step '{label}' on_failure")),
            next=data.get("next"),
            store_as=data.get("store_as"),
            continue_on_error=bool(data.get("continue_on_error", False)),
        )

    @property
    def is_loop(self) -> bool:
        return self.loop is not None or self.loop_until is not None


@dataclasses.dataclass(frozen=True)
class Playbook:
    """A named, versioned procedure of steps.  Immutable once loaded."""

    name: str
    steps: tuple[StepDef, ...] = ()
    version: str | None = None
    description: str | None = None
    inputs: dict[str, InputDef] = dataclasses.field(default_factory=dict)
    variables: dict[str, Any] = dataclasses.field(default_factory=dict)
    path: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: str | None = None) -> Playbook:
        """Build a Playbook from a parsed YAML mapping."""
        where = f": {path}" if path else ""
        if not isinstance(data, dict):
            raise PlaybookLoadError(f"Invalid playbook format{where}")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise PlaybookLoadError(f"Playbook must have a 'name' field{where}")
        steps = data.get("steps")
        if not isinstance(steps, list):
            raise PlaybookLoadError(f"Playbook must have a 'steps' array{where}")

        version = data.get("version")
        return cls(
            name=name,
            steps=tuple(StepDef.from_dict(s) for s in steps),
            version=str(version) if version is not None else None,
            description=data.get("description") if isinstance(data.get("description"), str) else None,
            inputs={
                k: InputDef.from_dict(v, k) for k, v in _mapping(data.get("inputs"), "Playbook inputs", where).items()
            },
            variables=dict(_mapping(data.get("variables"), "Playbook variables", where)),
            path=path,
        )


@dataclasses.dataclass
class PlaybookInfo:
    """Playbook metadata discovered in a playbooks directory."""

    id: str
    name: str
    config_path: str
    directory: str
    built_in: bool
    description: str | None = None
    version: str | None = None


@dataclasses.dataclass
class PlaybookValidationResult:
    """Result of structural playbook validation."""

    valid: bool
    errors: list[str]
    warnings: list[str]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def resolve_playbook_path(name_or_path: str | Path, playbooks_dir: Path) -> Path:
    """Map a playbook name or path to its YAML file."""
    text = str(name_or_path)
    if text.endswith((".yaml", ".yml")):
        return Path(text).expanduser().resolve()
    return playbooks_dir / text / "playbook.yaml"


def load_playbook_data(path: Path) -> dict[str, Any]:
    """Read and parse a playbook YAML file into a raw mapping."""
    if not path.is_file():
        raise PlaybookLoadError(f"Playbook not found: {path}")
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise PlaybookLoadError(f"Failed to parse YAML {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise PlaybookLoadError(f"Invalid playbook format in {path}")
    return data


def load_playbook(name_or_path: str | Path, playbooks_dir: Path) -> Playbook:
    """Load a playbook by name (``<dir>/<name>/playbook.yaml``) or by path."""
    path = resolve_playbook_path(name_or_path, playbooks_dir)
    data = load_playbook_data(path)
    playbook = Playbook.from_dict(data, path=str(path))
    logger.info("Loaded playbook: %s v%s", playbook.name, playbook.version or "1.0.0")
    return playbook


def list_playbooks(playbooks_dir: Path) -> list[PlaybookInfo]:
    """List every loadable playbook in *playbooks_dir*."""
    if not playbooks_dir.is_dir():
        return []

    playbooks: list[PlaybookInfo] = []
    for entry in sorted(playbooks_dir.iterdir()):
        if not entry.is_dir() or entry.name == "Common" or entry.name.startswith("."):
            continue
        config_path = entry / "playbook.yaml"
        if not config_path.is_file():
            continue
        try:
            playbook = load_playbook(entry.name, playbooks_dir)
        except PlaybookLoadError as exc:
            logger.debug("Skipping invalid playbook %s: %s", entry.name, exc)
            continue
        playbooks.append(
            PlaybookInfo(
                id=entry.name,
                name=playbook.name,
                description=playbook.description,
                version=playbook.version,
                config_path=str(config_path),
                directory=str(entry),
                built_in=entry.name in BUILTIN_PLAYBOOKS,
            )
        )
    return playbooks


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_playbook(playbook: Playbook, allow_empty: bool = False) -> PlaybookValidationResult:
    """Validate a loaded playbook's structure.  Never raises.

    With *allow_empty*, a playbook without steps is a warning rather than an
    error; running it completes immediately with nothing executed.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not playbook.name:
        errors.append("Playbook must have a 'name' field")

    if not playbook.steps:
        (warnings if allow_empty else errors).append("Playbook must have at least one step")
    else:
        _validate_step_list(playbook.steps, None, errors, warnings)

    for key, input_def in playbook.inputs.items():
        if input_def.required and input_def.has_default:
            warnings.append(f"Input '{key}' is marked required but has a default value")
        if input_def.type is not None and input_def.type not in INPUT_TYPES:
            errors.append(
                f"Input '{key}' has unknown type '{input_def.type}' (expected one of: {', '.join(INPUT_TYPES)})"
            )

    return PlaybookValidationResult(valid=not errors, errors=errors, warnings=warnings)


def _validate_step_list(
    steps: tuple[StepDef, ...],
    parent_id: str | None,
    errors: list[str],
    warnings: list[str],
    label: str = "Step",
) -> None:
    sibling_names = {s.name for s in steps if s.name}
    for index, step in enumerate(steps):
        if step.name:
            step_id = step.name
        elif parent_id:
            step_id = f"{parent_id} > {label} {index + 1}"
        else:
            step_id = f"Step {index + 1}"

        if not step.action and not step.is_loop:
            errors.append(f"{step_id}: Step must have an 'action', 'loop', or 'loop_until' field")
        if step.action is not None and not isinstance(step.action, str):
            errors.append(f"{step_id}: 'action' must be a string")
        if step.is_loop and not step.steps:
            warnings.append(f"{step_id}: Loop has no nested 'steps' and will be skipped")
        if step.next and step.next not in sibling_names:
            warnings.append(f"{step_id}: 'next' target '{step.next}' does not match any sibling step")
        if not step.name and step.action:
            warnings.append(f"{step_id}: Consider adding a 'name' field for better readability")

        if step.steps:
            _validate_step_list(step.steps, step_id, errors, warnings, label="Nested Step")
        if step.on_failure:
            _validate_step_list(step.on_failure, step_id, errors, warnings, label="Failure Step")


def schema_errors(data: Any) -> list[str]:
    """Validate a raw playbook mapping against the packaged JSON schema."""
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    validator = Draft7Validator(schema)
    issues: list[str] = []
    for err in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]):
        loc = ".".join(str(p) for p in err.path) if err.path else "root"
        issues.append(f"{loc}: {err.message}")
    return issues
