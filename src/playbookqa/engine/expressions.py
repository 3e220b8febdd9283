"""Template expression resolution for playbook inputs and conditions.

``{{ expr }}`` expressions are resolved against the execution context's
namespaces (``inputs``, ``variables``, ``outputs``, ``collected``) and the
scalar accessors ``artifacts_dir``, ``session_id`` and ``cwd``.  Evaluation
is lenient: an unresolvable path yields ``MISSING`` instead of raising.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from playbookqa.engine.context import ExecutionContext

logger = logging.getLogger("playbookqa.engine.expressions")

# A full template may not contain a second ``}}`` -- "{{a}} and {{b}}" is
# interpolation, not one expression.
_FULL_TEMPLATE_RE = re.compile(r"^\{\{\s*((?:(?!\}\}).)+?)\s*\}\}$")
_EMBEDDED_TEMPLATE_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")
_DEFAULT_FILTER_RE = re.compile(r"^default\((.+)\)$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

_NAMESPACES = ("inputs", "variables", "outputs", "collected")
_SCALAR_ACCESSORS = ("artifacts_dir", "session_id", "cwd")


class _Missing:
    """Sentinel for an expression that resolved to nothing."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def resolve_value(context: ExecutionContext, value: Any) -> Any:
    """Resolve templates in *value*.

    A full-template string returns the expression's value with its own type
    (``None`` when it resolves to nothing).  Any other string containing
    ``{{ }}`` is interpolated and always stays a string.  Lists and dicts
    resolve element-wise; every other value passes through unchanged.
    """
    if isinstance(value, str):
        match = _FULL_TEMPLATE_RE.match(value)
        if match:
            result = evaluate_expression(context, match.group(1))
            return None if result is MISSING else result
        if "{{" in value:
            return _EMBEDDED_TEMPLATE_RE.sub(
                lambda m: _stringify(evaluate_expression(context, m.group(1))), value
            )
        return value
    if isinstance(value, dict):
        return resolve_object(context, value)
    if isinstance(value, (list, tuple)):
        return [resolve_value(context, item) for item in value]
    return value


def resolve_object(context: ExecutionContext, obj: dict[str, Any]) -> dict[str, Any]:
    """Resolve every value of a mapping, returning a new dict."""
    return {key: resolve_value(context, value) for key, value in obj.items()}


def _stringify(value: Any) -> str:
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def evaluate_expression(context: ExecutionContext, expr: str) -> Any:
    """Evaluate one expression (the text between the braces).

    Returns ``MISSING`` when the path cannot be resolved.
    """
    trimmed = expr.strip()

    if " | " in trimmed:
        base, *filters = (part.strip() for part in trimmed.split(" | "))
        value = evaluate_expression(context, base)
        for name in filters:
            value = apply_filter(value, name)
        return value

    parts = trimmed.split(".")
    root, rest = parts[0], parts[1:]

    if root in _NAMESPACES:
        return _traverse(getattr(context, root), rest)

    if root in _SCALAR_ACCESSORS and not rest:
        accessor = getattr(context, root)
        return str(accessor) if accessor is not None else MISSING

    # Bare identifier: variables first, then the innermost loop variable
    if root in context.variables:
        return _traverse(context.variables[root], rest)
    frame = context.current_loop
    if frame is not None and root == frame.as_:
        return _traverse(frame.item, rest)

    # range(N) is kept verbatim for loop expansion
    if trimmed.startswith("range("):
        return trimmed
    return MISSING


def _traverse(current: Any, parts: list[str]) -> Any:
    for part in parts:
        if current is None or current is MISSING:
            return MISSING
        if isinstance(current, dict):
            current = current.get(part, MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else MISSING
        else:
            return MISSING
    return current


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def apply_filter(value: Any, filter_expr: str) -> Any:
    """Apply one pipe filter.  Unknown filters pass the value through."""
    match = _DEFAULT_FILTER_RE.match(filter_expr)
    if match:
        if value is MISSING or value is None or value == "":
            return _parse_literal(match.group(1).strip())
        return value

    if filter_expr == "length":
        if isinstance(value, (list, tuple, str)):
            return len(value)
        return 0

    if filter_expr == "json":
        if value is MISSING:
            return MISSING
        return json.dumps(value, default=str)

    logger.debug("Unknown filter '%s' ignored", filter_expr)
    return value


def _parse_literal(token: str) -> Any:
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    if token == "true":
        return True
    if token == "false":
        return False
    if _NUMBER_RE.match(token):
        try:
            return int(token)
        except ValueError:
            return float(token)
    return token


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

def evaluate_condition(context: ExecutionContext, condition: Any) -> bool:
    """Truthiness of a condition expression.  Never raises.

    ``condition`` may be a bare expression (``variables.flag``) or already
    wrapped in braces (``{{ variables.flag }}``).  MISSING, None, False, 0
    and "" are falsy; everything else, including empty collections, is truthy.
    """
    try:
        if isinstance(condition, str):
            text = condition if "{{" in condition else f"{{{{ {condition} }}}}"
            resolved = resolve_value(context, text)
        else:
            resolved = condition
    except Exception as exc:
        logger.debug("Condition %r could not be evaluated: %s", condition, exc)
        return False

    if resolved is MISSING or resolved is None or resolved is False or resolved == "":
        return False
    if isinstance(resolved, (int, float)) and not isinstance(resolved, bool) and resolved == 0:
        return False
    return True
