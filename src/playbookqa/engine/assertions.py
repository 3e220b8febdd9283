"""UI and log assertions built on the verification polling framework.

Each assertion builds a ``check`` closure over a device collaborator, polls it,
and classifies the outcome into a VerificationResult.  ``device_actions``
wraps the assertions and the basic device operations as ``ios.*`` action
handlers for the step engine.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Callable

from playbookqa.engine.protocols import ActionHandler, ActionOutcome, DeviceController, UIInspector
from playbookqa.engine.verification import (
    CheckResult,
    PollingOptions,
    PollOutcome,
    VerificationAttempt,
    VerificationResult,
    VerificationStatus,
    classify_outcome,
    create_error_result,
    create_failed_result,
    create_passed_result,
    create_timeout_result,
    generate_verification_id,
    merge_polling_options,
    poll_until,
)
from playbookqa.models import DEFAULT_SCREEN_SIZE

logger = logging.getLogger("playbookqa.engine.assertions")

OVERLAY_TYPES = ("alert", "sheet", "popover", "dialog", "modal", "window")
MATCH_MODES = ("contains", "exact", "starts_with", "ends_with", "regex")


# ---------------------------------------------------------------------------
# Element lookup
# ---------------------------------------------------------------------------

def iter_elements(tree: Mapping[str, Any] | None) -> list[Mapping[str, Any]]:
    """Every element of *tree*, depth-first, parents before children."""
    if not tree:
        return []
    elements = [tree]
    for child in tree.get("children") or []:
        elements.extend(iter_elements(child))
    return elements


def find_element(
    tree: Mapping[str, Any] | None,
    target: Mapping[str, Any],
) -> tuple[Mapping[str, Any] | None, str | None]:
    """Find *target* by identifier, then label, then text, then type.

    Returns ``(element, matched_by)`` or ``(None, None)``.
    """
    elements = iter_elements(tree)

    if target.get("identifier"):
        for el in elements:
            if el.get("identifier") == target["identifier"]:
                return el, "identifier"
    if target.get("label"):
        for el in elements:
            if el.get("label") == target["label"]:
                return el, "label"
    if target.get("text"):
        needle = str(target["text"]).lower()
        for el in elements:
            haystack = f"{el.get('label') or ''} {el.get('value') or ''}".lower()
            if needle in haystack:
                return el, "text"
    if target.get("type"):
        wanted = str(target["type"]).lower()
        for el in elements:
            if str(el.get("type", "")).lower() == wanted:
                return el, "type"
    return None, None


def describe_target(target: Mapping[str, Any]) -> str:
    parts = []
    if target.get("identifier"):
        parts.append(f'identifier="{target["identifier"]}"')
    if target.get("label"):
        parts.append(f'label="{target["label"]}"')
    if target.get("text"):
        parts.append(f'text="{target["text"]}"')
    if target.get("type"):
        parts.append(f"type={target['type']}")
    return ", ".join(parts) or "unknown element"


def _frame(element: Mapping[str, Any]) -> dict[str, float]:
    frame = element.get("frame") or {}
    return {k: float(frame.get(k, 0) or 0) for k in ("x", "y", "width", "height")}


def _center(frame: Mapping[str, float]) -> tuple[int, int]:
    return round(frame["x"] + frame["width"] / 2), round(frame["y"] + frame["height"] / 2)


def find_obscuring_element(
    target: Mapping[str, Any],
    elements: list[Mapping[str, Any]],
) -> Mapping[str, Any] | None:
    """A visible overlay (alert, sheet, ...) covering the target's center."""
    cx, cy = _center(_frame(target))
    for el in elements:
        if el is target or not el.get("visible", True):
            continue
        el_type = str(el.get("type", "")).lower()
        if not any(t in el_type for t in OVERLAY_TYPES):
            continue
        f = _frame(el)
        if f["width"] <= 0 or f["height"] <= 0:
            continue
        if f["x"] <= cx <= f["x"] + f["width"] and f["y"] <= cy <= f["y"] + f["height"]:
            return el
    return None


# ---------------------------------------------------------------------------
# Shared plumbing
# ---------------------------------------------------------------------------

async def _inspect(inspector: UIInspector) -> tuple[Mapping[str, Any] | None, str | None]:
    result = await inspector.ui_tree()
    if not result.success or not result.data:
        return None, result.error or "Failed to inspect UI"
    return result.data, None


async def _single_check(check: Callable[[], Any]) -> PollOutcome:
    """Run *check* once, shaped like a poll outcome."""
    started = dt.datetime.now(dt.timezone.utc)
    try:
        result = CheckResult.coerce(await check())
    except Exception as exc:
        result = CheckResult(passed=False, error=str(exc))
    duration = (dt.datetime.now(dt.timezone.utc) - started).total_seconds() * 1000
    attempt = VerificationAttempt(
        attempt=1,
        timestamp=started.isoformat(),
        success=result.passed,
        duration=duration,
        error=result.error,
        details=result.data,
    )
    return PollOutcome(passed=result.passed, duration=duration, attempts=[attempt], last_data=result.data)


def _finalize(
    *,
    type: str,
    target: str,
    outcome: PollOutcome,
    options: PollingOptions,
    start_time: dt.datetime,
    passed_message: str,
    failed_message: str,
    polled: bool = True,
) -> VerificationResult:
    common = dict(
        id=generate_verification_id(type),
        type=type,
        target=target,
        start_time=start_time,
        attempts=outcome.attempts,
        data=outcome.last_data,
    )
    status = classify_outcome(outcome, options) if polled else (
        VerificationStatus.PASSED if outcome.passed else VerificationStatus.FAILED
    )
    if status == VerificationStatus.PASSED:
        logger.info("Assertion passed: %s", passed_message)
        return create_passed_result(message=passed_message, **common)
    if status == VerificationStatus.TIMEOUT:
        logger.warning("Assertion timeout: %s after %dms", target, options.timeout)
        return create_timeout_result(timeout=options.timeout, **common)
    last = outcome.attempts[-1] if outcome.attempts else None
    message = (last.error if last and last.error else None) or failed_message
    logger.warning("Assertion failed: %s", message)
    return create_failed_result(message=message, **common)


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------

async def assert_visible(
    inspector: UIInspector,
    target: Mapping[str, Any],
    polling: PollingOptions | Mapping[str, Any] | None = None,
    require_enabled: bool = False,
) -> VerificationResult:
    """Poll until the target element is present and visible (and enabled, if required)."""
    opts = merge_polling_options(polling)
    description = describe_target(target)
    opts.description = f"visibility of {description}"
    start_time = dt.datetime.now(dt.timezone.utc)

    async def check() -> CheckResult:
        tree, error = await _inspect(inspector)
        if error:
            return CheckResult(passed=False, error=error)
        element, matched_by = find_element(tree, target)
        if element is None:
            return CheckResult(passed=False, error=f"Element not found: {description}")
        data = {"element": dict(element), "matched_by": matched_by}
        if not element.get("visible", True):
            return CheckResult(passed=False, error=f"Element found but not visible: {description}", data=data)
        if require_enabled and not element.get("enabled", True):
            return CheckResult(passed=False, error=f"Element found but not enabled: {description}", data=data)
        return CheckResult(passed=True, data=data)

    outcome = await poll_until(check, opts)
    return _finalize(
        type="visible",
        target=description,
        outcome=outcome,
        options=opts,
        start_time=start_time,
        passed_message=f'Element "{description}" is visible',
        failed_message=f'Element "{description}" is not visible',
    )


async def assert_not_visible(
    inspector: UIInspector,
    target: Mapping[str, Any],
    polling: PollingOptions | Mapping[str, Any] | None = None,
) -> VerificationResult:
    """Poll until the target element is absent or hidden."""
    opts = merge_polling_options(polling)
    description = describe_target(target)
    opts.description = f"absence of {description}"
    start_time = dt.datetime.now(dt.timezone.utc)

    async def check() -> CheckResult:
        tree, error = await _inspect(inspector)
        if error:
            return CheckResult(passed=False, error=error)
        element, matched_by = find_element(tree, target)
        if element is None:
            return CheckResult(passed=True, data={"was_found": False})
        if not element.get("visible", True):
            return CheckResult(passed=True, data={"was_found": True, "matched_by": matched_by})
        return CheckResult(
            passed=False,
            error=f"Element is still visible: {description}",
            data={"was_found": True, "matched_by": matched_by, "element": dict(element)},
        )

    outcome = await poll_until(check, opts)
    return _finalize(
        type="not-visible",
        target=description,
        outcome=outcome,
        options=opts,
        start_time=start_time,
        passed_message=f'Element "{description}" is not visible',
        failed_message=f'Element "{description}" is still visible',
    )


# ---------------------------------------------------------------------------
# Hittability
# ---------------------------------------------------------------------------

def hittable_check(
    tree: Mapping[str, Any] | None,
    target: Mapping[str, Any],
    screen: tuple[int, int] = DEFAULT_SCREEN_SIZE,
) -> CheckResult:
    """Decide whether *target* in *tree* can receive a tap."""
    description = describe_target(target)
    elements = iter_elements(tree)
    element, matched_by = find_element(tree, target)
    if element is None:
        return CheckResult(
            passed=False,
            error=f"Element not found: {description}",
            data={
                "not_hittable_reason": "not_found",
                "suggested_action": "Verify the element identifier/label is correct, or wait for the element to appear",
                "total_elements_scanned": len(elements),
            },
        )

    frame = _frame(element)
    cx, cy = _center(frame)
    data: dict[str, Any] = {
        "element": dict(element),
        "matched_by": matched_by,
        "position": {**frame, "center_x": cx, "center_y": cy},
        "total_elements_scanned": len(elements),
    }

    def fail(reason: str, error: str, suggestion: str, **extra: Any) -> CheckResult:
        return CheckResult(
            passed=False,
            error=error,
            data={**data, **extra, "not_hittable_reason": reason, "suggested_action": suggestion},
        )

    if not element.get("visible", True):
        return fail(
            "not_visible",
            f"Element found but not visible: {description}",
            "Wait for the element to become visible or scroll it into view",
        )
    if not element.get("enabled", True):
        return fail(
            "not_enabled",
            f"Element found but not enabled: {description}",
            "Wait for the element to become enabled or complete required preceding steps",
        )
    if frame["width"] == 0 or frame["height"] == 0:
        return fail(
            "zero_size",
            f"Element has zero size (collapsed or hidden): {description}",
            "Wait for the element to load or expand",
        )

    width, height = screen
    if (
        frame["x"] + frame["width"] < 0
        or frame["x"] > width
        or frame["y"] + frame["height"] < 0
        or frame["y"] > height
    ):
        return fail(
            "off_screen",
            f"Element is off-screen at ({cx}, {cy}): {description}",
            f"Scroll to bring the element into view (element center at x:{cx}, y:{cy})",
            is_off_screen=True,
        )

    overlay = find_obscuring_element(element, elements)
    if overlay is not None:
        overlay_type = overlay.get("type", "overlay")
        return fail(
            "obscured",
            f"Element is obscured by {overlay_type}: {description}",
            f"Dismiss the {overlay_type} before interacting with the element",
            obscuring_element={
                "type": overlay_type,
                "identifier": overlay.get("identifier"),
                "label": overlay.get("label"),
            },
        )

    return CheckResult(passed=True, data={**data, "is_off_screen": False})


async def assert_hittable(
    inspector: UIInspector,
    target: Mapping[str, Any],
    polling: PollingOptions | Mapping[str, Any] | None = None,
    screen: tuple[int, int] = DEFAULT_SCREEN_SIZE,
) -> VerificationResult:
    """Poll until the target element is visible, enabled, sized, on screen and unobscured."""
    opts = merge_polling_options(polling)
    description = describe_target(target)
    opts.description = f"hittable state of {description}"
    start_time = dt.datetime.now(dt.timezone.utc)

    async def check() -> CheckResult:
        tree, error = await _inspect(inspector)
        if error:
            return CheckResult(passed=False, error=error)
        return hittable_check(tree, target, screen)

    outcome = await poll_until(check, opts)
    position = (outcome.last_data or {}).get("position") if outcome.passed else None
    at = f" at ({position['center_x']}, {position['center_y']})" if position else ""
    reason = (outcome.last_data or {}).get("not_hittable_reason", "unknown")
    return _finalize(
        type="hittable",
        target=description,
        outcome=outcome,
        options=opts,
        start_time=start_time,
        passed_message=f'Element "{description}" is hittable{at}',
        failed_message=f'Element "{description}" is not hittable: {reason}',
    )


# ---------------------------------------------------------------------------
# Logs and crashes
# ---------------------------------------------------------------------------

def create_matcher(pattern: str, mode: str = "contains", case_sensitive: bool = False) -> re.Pattern[str]:
    """Compile *pattern* for *mode*.  Raises ``re.error`` for a bad regex."""
    flags = 0 if case_sensitive else re.IGNORECASE
    if mode == "regex":
        return re.compile(pattern, flags)
    escaped = re.escape(pattern)
    if mode == "exact":
        return re.compile(f"^{escaped}$", flags)
    if mode == "starts_with":
        return re.compile(f"^{escaped}", flags)
    if mode == "ends_with":
        return re.compile(f"{escaped}$", flags)
    return re.compile(escaped, flags)


def _log_message(entry: Any) -> str:
    if isinstance(entry, Mapping):
        return str(entry.get("message", ""))
    return str(entry)


async def assert_log_contains(
    device: DeviceController,
    pattern: str,
    match_mode: str = "contains",
    case_sensitive: bool = False,
    not_contains: bool = False,
    min_matches: int = 1,
    bundle_id: str | None = None,
    since: dt.datetime | None = None,
    polling: PollingOptions | Mapping[str, Any] | None = None,
) -> VerificationResult:
    """Assert that *pattern* appears (or, with ``not_contains``, does not) in device logs.

    Without *polling* the logs are checked once.
    """
    assertion_type = "log-not-contains" if not_contains else "log-contains"
    target = f'"{pattern}" in {bundle_id or "all processes"}'
    start_time = dt.datetime.now(dt.timezone.utc)
    since = since or start_time - dt.timedelta(minutes=1)
    opts = merge_polling_options(polling)
    opts.description = f"log {'not ' if not_contains else ''}contains \"{pattern}\""

    try:
        matcher = create_matcher(pattern, match_mode, case_sensitive)
    except re.error as exc:
        logger.warning("Invalid log pattern %r: %s", pattern, exc)
        return create_error_result(
            id=generate_verification_id(assertion_type),
            type=assertion_type,
            target=target,
            start_time=start_time,
            attempts=[],
            error=f"Invalid regex pattern: {exc}",
        )

    async def check() -> CheckResult:
        result = await device.read_logs(since, process=bundle_id)
        if not result.success:
            return CheckResult(passed=False, error=result.error or "Failed to read logs")
        entries = result.data or []
        matched = [_log_message(e) for e in entries if matcher.search(_log_message(e))]
        data = {
            "pattern": pattern,
            "match_mode": match_mode,
            "is_negation": not_contains,
            "match_count": len(matched),
            "matches": matched[:10],
            "total_logs_scanned": len(entries),
            "min_matches": min_matches,
        }
        if not_contains:
            if matched:
                return CheckResult(
                    passed=False,
                    error=f"Found {len(matched)} unexpected match(es) for \"{pattern}\"",
                    data=data,
                )
            return CheckResult(passed=True, data=data)
        if len(matched) < min_matches:
            error = (
                f'Pattern "{pattern}" not found in logs'
                if not matched
                else f"Found {len(matched)} match(es) but required {min_matches}"
            )
            return CheckResult(passed=False, error=error, data=data)
        return CheckResult(passed=True, data=data)

    outcome = await poll_until(check, opts) if polling is not None else await _single_check(check)
    data = outcome.last_data or {}
    if not_contains:
        passed_message = f'Pattern "{pattern}" not found in {data.get("total_logs_scanned", 0)} log entries (as expected)'
    else:
        passed_message = (
            f'Found {data.get("match_count", 0)} match(es) for "{pattern}" '
            f'in {data.get("total_logs_scanned", 0)} log entries'
        )
    return _finalize(
        type=assertion_type,
        target=target,
        outcome=outcome,
        options=opts,
        start_time=start_time,
        passed_message=passed_message,
        failed_message=f'Log assertion failed for "{pattern}"',
        polled=polling is not None,
    )


async def assert_no_crash(
    device: DeviceController,
    bundle_id: str,
    since: dt.datetime | None = None,
    polling: PollingOptions | Mapping[str, Any] | None = None,
) -> VerificationResult:
    """Assert that *bundle_id* has no crash reports since *since*."""
    start_time = dt.datetime.now(dt.timezone.utc)
    since = since or start_time
    opts = merge_polling_options(polling)
    opts.description = f"no crash for {bundle_id}"

    async def check() -> CheckResult:
        result = await device.crash_reports(bundle_id, since)
        if not result.success:
            return CheckResult(passed=False, error=result.error or "Failed to check crash logs")
        crashes = list(result.data or [])
        data = {
            "bundle_id": bundle_id,
            "since": since.isoformat(),
            "crashes_found": bool(crashes),
            "crash_count": len(crashes),
            "crashes": crashes or None,
        }
        if crashes:
            latest = crashes[0] if isinstance(crashes[0], Mapping) else {}
            when = latest.get("timestamp", "unknown time")
            exc_type = latest.get("exception_type")
            error = f'App "{bundle_id}" crashed at {when}' + (f" ({exc_type})" if exc_type else "")
            if len(crashes) > 1:
                error += f" ({len(crashes)} crashes detected)"
            return CheckResult(passed=False, error=error, data=data)
        return CheckResult(passed=True, data=data)

    outcome = await poll_until(check, opts) if polling is not None else await _single_check(check)
    return _finalize(
        type="no-crash",
        target=bundle_id,
        outcome=outcome,
        options=opts,
        start_time=start_time,
        passed_message=f'App "{bundle_id}" has not crashed since {since.isoformat()}',
        failed_message=f'App "{bundle_id}" crashed',
        polled=polling is not None,
    )


# ---------------------------------------------------------------------------
# Action handlers
# ---------------------------------------------------------------------------

def verification_outcome(result: VerificationResult) -> ActionOutcome:
    """Map a VerificationResult onto an action outcome."""
    return ActionOutcome(
        success=result.passed,
        data=result.to_dict(),
        error=None if result.passed else result.message,
    )


def _target_from(inputs: Mapping[str, Any]) -> dict[str, Any]:
    source = inputs.get("target") if isinstance(inputs.get("target"), Mapping) else inputs
    return {k: source[k] for k in ("identifier", "label", "text", "type") if source.get(k)}


def _step_polling(inputs: Mapping[str, Any], defaults: PollingOptions | None) -> PollingOptions:
    return merge_polling_options(
        {"timeout": inputs.get("timeout"), "poll_interval": inputs.get("poll_interval")},
        defaults,
    )


def _since(context: Any) -> dt.datetime:
    return dt.datetime.fromtimestamp(context.start_time / 1000, tz=dt.timezone.utc)


def device_actions(
    device: DeviceController,
    inspector: UIInspector | None = None,
    polling: PollingOptions | None = None,
    bundle_id: str | None = None,
    screen: tuple[int, int] = DEFAULT_SCREEN_SIZE,
) -> dict[str, ActionHandler]:
    """Device-backed ``ios.*`` action handlers.

    Visibility and hittability actions need a UI inspector and are only
    included when one is given.  *bundle_id* is the fallback for actions
    whose inputs omit one.
    """

    def app_id(inputs: Mapping[str, Any]) -> str | None:
        return inputs.get("bundle_id") or bundle_id

    async def launch(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
        target_app = app_id(inputs)
        if not target_app:
            return ActionOutcome(success=False, error="launch requires a 'bundle_id' input")
        result = await device.launch_app(target_app)
        return ActionOutcome(success=result.success, data=result.data, error=result.error)

    async def terminate(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
        target_app = app_id(inputs)
        if not target_app:
            return ActionOutcome(success=False, error="terminate requires a 'bundle_id' input")
        result = await device.terminate_app(target_app)
        return ActionOutcome(success=result.success, data=result.data, error=result.error)

    async def tap(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
        if "x" in inputs and "y" in inputs:
            x, y = float(inputs["x"]), float(inputs["y"])
        else:
            target = _target_from(inputs)
            if not target or inspector is None:
                return ActionOutcome(success=False, error="tap requires 'x'/'y' or an element target")
            tree, error = await _inspect(inspector)
            if error:
                return ActionOutcome(success=False, error=error)
            element, _ = find_element(tree, target)
            if element is None:
                return ActionOutcome(success=False, error=f"Element not found: {describe_target(target)}")
            x, y = _center(_frame(element))
        result = await device.tap(x, y)
        return ActionOutcome(success=result.success, data={"x": x, "y": y}, error=result.error)

    async def type_text(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
        text = inputs.get("text")
        if text is None:
            return ActionOutcome(success=False, error="type requires a 'text' input")
        result = await device.type_text(str(text))
        return ActionOutcome(success=result.success, data={"text": str(text)}, error=result.error)

    async def screenshot(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
        name = inputs.get("name") or f"screenshot-{context.current_step_index}"
        base = Path(context.artifacts_dir) if context.artifacts_dir else Path(context.cwd)
        output = base / f"{name}.png"
        result = await device.screenshot(output)
        return ActionOutcome(success=result.success, data={"path": str(output)}, error=result.error)

    async def log_contains(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
        pattern = inputs.get("pattern")
        if not pattern:
            return ActionOutcome(success=False, error="assert_log_contains requires a 'pattern' input")
        result = await assert_log_contains(
            device,
            str(pattern),
            match_mode=inputs.get("match_mode", "contains"),
            case_sensitive=bool(inputs.get("case_sensitive", False)),
            not_contains=bool(inputs.get("not_contains", False)),
            min_matches=int(inputs.get("min_matches", 1)),
            bundle_id=inputs.get("bundle_id"),
            since=_since(context),
            polling=_step_polling(inputs, polling) if inputs.get("timeout") is not None else None,
        )
        return verification_outcome(result)

    async def no_crash(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
        target_app = app_id(inputs)
        if not target_app:
            return ActionOutcome(success=False, error="assert_no_crash requires a 'bundle_id' input")
        result = await assert_no_crash(
            device,
            target_app,
            since=_since(context),
            polling=_step_polling(inputs, polling) if inputs.get("timeout") is not None else None,
        )
        return verification_outcome(result)

    handlers: dict[str, ActionHandler] = {
        "ios.launch": launch,
        "ios.terminate": terminate,
        "ios.tap": tap,
        "ios.type": type_text,
        "ios.screenshot": screenshot,
        "ios.assert_log_contains": log_contains,
        "ios.assert_no_crash": no_crash,
    }

    if inspector is not None:

        async def visible(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
            result = await assert_visible(
                inspector,
                _target_from(inputs),
                _step_polling(inputs, polling),
                require_enabled=bool(inputs.get("require_enabled", False)),
            )
            return verification_outcome(result)

        async def not_visible(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
            result = await assert_not_visible(inspector, _target_from(inputs), _step_polling(inputs, polling))
            return verification_outcome(result)

        async def hittable(context: Any, inputs: dict[str, Any], step: Any) -> ActionOutcome:
            result = await assert_hittable(inspector, _target_from(inputs), _step_polling(inputs, polling), screen)
            return verification_outcome(result)

        handlers.update(
            {
                "ios.assert_visible": visible,
                "ios.assert_not_visible": not_visible,
                "ios.assert_hittable": hittable,
            }
        )

    return handlers
