"""Unit tests for playbookqa.engine.assertions -- UI, log and crash assertions and ios.* actions."""

from __future__ import annotations

import datetime as dt
import re
from pathlib import Path

import pytest

from conftest import FakeDevice, FakeInspector, element, screen
from playbookqa.engine.assertions import (
    assert_hittable,
    assert_log_contains,
    assert_no_crash,
    assert_not_visible,
    assert_visible,
    create_matcher,
    describe_target,
    device_actions,
    find_element,
    hittable_check,
    iter_elements,
    verification_outcome,
)
from playbookqa.engine.context import ExecutionContext
from playbookqa.engine.playbook_loader import Playbook
from playbookqa.engine.registry import builtin_registry
from playbookqa.engine.verification import PollingOptions

FAST = PollingOptions(timeout=100, poll_interval=20)

LOGIN = element(identifier="login_button", label="Log In", frame={"x": 40, "y": 600, "width": 200, "height": 50})
EMAIL = element(type="TextField", identifier="email_field", label="Email", value="ada@example.com")


def _make_context(**overrides) -> ExecutionContext:
    defaults = {"playbook": Playbook(name="assertions"), "actions": builtin_registry()}
    defaults.update(overrides)
    return ExecutionContext(**defaults)


# ---------------------------------------------------------------------------
# 1. Element lookup
# ---------------------------------------------------------------------------

class TestFindElement:
    """Lookup precedence is identifier, label, text, type."""

    def test_iter_elements_depth_first(self):
        tree = screen(LOGIN, EMAIL)
        assert [e.get("identifier") for e in iter_elements(tree)] == [None, "login_button", "email_field"]

    def test_identifier_wins(self):
        el, by = find_element(screen(LOGIN, EMAIL), {"identifier": "email_field", "label": "Log In"})
        assert el is EMAIL
        assert by == "identifier"

    def test_label_match(self):
        el, by = find_element(screen(LOGIN, EMAIL), {"label": "Log In"})
        assert el is LOGIN
        assert by == "label"

    def test_text_matches_value_case_insensitive(self):
        el, by = find_element(screen(LOGIN, EMAIL), {"text": "ADA@"})
        assert el is EMAIL
        assert by == "text"

    def test_type_match(self):
        el, by = find_element(screen(LOGIN, EMAIL), {"type": "textfield"})
        assert el is EMAIL
        assert by == "type"

    def test_not_found(self):
        assert find_element(screen(LOGIN), {"identifier": "nope"}) == (None, None)

    def test_describe_target(self):
        assert describe_target({"identifier": "a", "type": "Button"}) == 'identifier="a", type=Button'
        assert describe_target({}) == "unknown element"


# ---------------------------------------------------------------------------
# 2. Visibility
# ---------------------------------------------------------------------------

class TestVisibility:
    """assert_visible / assert_not_visible poll the UI tree."""

    @pytest.mark.asyncio
    async def test_visible_passes(self):
        result = await assert_visible(FakeInspector(screen(LOGIN)), {"identifier": "login_button"}, FAST)
        assert result.passed is True
        assert result.type == "visible"
        assert result.data["matched_by"] == "identifier"
        assert len(result.attempts) == 1

    @pytest.mark.asyncio
    async def test_visible_after_element_appears(self):
        inspector = FakeInspector(screen(), screen(), screen(LOGIN))
        result = await assert_visible(inspector, {"label": "Log In"}, {"timeout": 1000, "poll_interval": 10})
        assert result.passed is True
        assert len(result.attempts) == 3

    @pytest.mark.asyncio
    async def test_missing_element_times_out(self):
        result = await assert_visible(FakeInspector(screen()), {"identifier": "login_button"}, FAST)
        assert result.passed is False
        assert result.status == "timeout"
        assert result.message == 'Timeout after 100ms waiting for visible on identifier="login_button"'
        assert result.attempts[-1].error == 'Element not found: identifier="login_button"'

    @pytest.mark.asyncio
    async def test_hidden_element_not_visible(self):
        hidden = element(identifier="spinner", visible=False)
        result = await assert_visible(FakeInspector(screen(hidden)), {"identifier": "spinner"}, FAST)
        assert result.passed is False
        assert result.attempts[0].error == 'Element found but not visible: identifier="spinner"'

    @pytest.mark.asyncio
    async def test_require_enabled(self):
        disabled = element(identifier="submit", enabled=False)
        result = await assert_visible(
            FakeInspector(screen(disabled)), {"identifier": "submit"}, FAST, require_enabled=True
        )
        assert result.passed is False

    @pytest.mark.asyncio
    async def test_inspector_failure_is_recorded(self):
        result = await assert_visible(FakeInspector(None), {"identifier": "x"}, FAST)
        assert result.passed is False
        assert result.attempts[0].error == "No UI tree available"

    @pytest.mark.asyncio
    async def test_not_visible_when_absent(self):
        result = await assert_not_visible(FakeInspector(screen()), {"identifier": "spinner"}, FAST)
        assert result.passed is True
        assert result.type == "not-visible"
        assert result.data == {"was_found": False}

    @pytest.mark.asyncio
    async def test_not_visible_when_hidden(self):
        hidden = element(identifier="spinner", visible=False)
        result = await assert_not_visible(FakeInspector(screen(hidden)), {"identifier": "spinner"}, FAST)
        assert result.passed is True
        assert result.data["was_found"] is True

    @pytest.mark.asyncio
    async def test_not_visible_fails_while_shown(self):
        spinner = element(identifier="spinner")
        result = await assert_not_visible(FakeInspector(screen(spinner)), {"identifier": "spinner"}, FAST)
        assert result.passed is False
        assert result.attempts[-1].error == 'Element is still visible: identifier="spinner"'


# ---------------------------------------------------------------------------
# 3. Hittability
# ---------------------------------------------------------------------------

class TestHittableCheck:
    """hittable_check reports why an element cannot receive a tap."""

    def test_hittable(self):
        result = hittable_check(screen(LOGIN), {"identifier": "login_button"})
        assert result.passed is True
        assert result.data["position"]["center_x"] == 140
        assert result.data["position"]["center_y"] == 625
        assert result.data["is_off_screen"] is False

    @pytest.mark.parametrize(
        ("overrides", "reason"),
        [
            ({"visible": False}, "not_visible"),
            ({"enabled": False}, "not_enabled"),
            ({"frame": {"x": 10, "y": 10, "width": 0, "height": 44}}, "zero_size"),
            ({"frame": {"x": 10, "y": 2000, "width": 100, "height": 44}}, "off_screen"),
            ({"frame": {"x": -300, "y": 10, "width": 100, "height": 44}}, "off_screen"),
        ],
    )
    def test_not_hittable_reasons(self, overrides, reason):
        target = element(identifier="t", **overrides)
        result = hittable_check(screen(target), {"identifier": "t"})
        assert result.passed is False
        assert result.data["not_hittable_reason"] == reason
        assert result.data["suggested_action"]

    def test_not_found(self):
        result = hittable_check(screen(LOGIN), {"identifier": "gone"})
        assert result.data["not_hittable_reason"] == "not_found"
        assert result.data["total_elements_scanned"] == 2

    def test_obscured_by_alert(self):
        alert = {
            "type": "Alert",
            "identifier": "update_alert",
            "visible": True,
            "frame": {"x": 0, "y": 500, "width": 430, "height": 300},
        }
        result = hittable_check(screen(LOGIN, alert), {"identifier": "login_button"})
        assert result.passed is False
        assert result.data["not_hittable_reason"] == "obscured"
        assert result.data["obscuring_element"]["identifier"] == "update_alert"
        assert result.error == 'Element is obscured by Alert: identifier="login_button"'

    def test_hidden_overlay_does_not_obscure(self):
        alert = {"type": "Alert", "visible": False, "frame": {"x": 0, "y": 500, "width": 430, "height": 300}}
        assert hittable_check(screen(LOGIN, alert), {"identifier": "login_button"}).passed is True

    def test_custom_screen_size(self):
        result = hittable_check(screen(LOGIN), {"identifier": "login_button"}, screen=(320, 480))
        assert result.data["not_hittable_reason"] == "off_screen"

    @pytest.mark.asyncio
    async def test_assert_hittable_message(self):
        result = await assert_hittable(FakeInspector(screen(LOGIN)), {"identifier": "login_button"}, FAST)
        assert result.passed is True
        assert result.message == 'Element "identifier="login_button"" is hittable at (140, 625)'


# ---------------------------------------------------------------------------
# 4. Log assertions
# ---------------------------------------------------------------------------

LOGS = [
    {"message": "App launched", "process": "MyApp"},
    {"message": "User logged in: ada", "process": "MyApp"},
    {"message": "Sync complete", "process": "MyApp"},
    "raw string entry with LOGIN token",
]


class TestCreateMatcher:
    @pytest.mark.parametrize(
        ("mode", "text", "matches"),
        [
            ("contains", "User logged in: ada", True),
            ("exact", "user logged in", False),
            ("exact", "Logged In", True),
            ("starts_with", "logged in: ada", True),
            ("ends_with", "please logged in", True),
            ("regex", "logged in", True),
        ],
    )
    def test_modes(self, mode, text, matches):
        pattern = "logged\\s+in" if mode == "regex" else "logged in"
        assert bool(create_matcher(pattern, mode).search(text)) is matches

    def test_case_sensitive(self):
        assert create_matcher("Sync", case_sensitive=True).search("sync") is None

    def test_invalid_regex_raises(self):
        with pytest.raises(re.error):
            create_matcher("(", "regex")


class TestAssertLogContains:
    """Log assertions check once unless polling options are given."""

    @pytest.mark.asyncio
    async def test_contains(self):
        device = FakeDevice(logs=LOGS)
        result = await assert_log_contains(device, "logged in", bundle_id="com.example.MyApp")
        assert result.passed is True
        assert result.type == "log-contains"
        assert result.data["match_count"] == 1
        assert result.data["total_logs_scanned"] == 4
        assert len(result.attempts) == 1
        assert device.calls[0][1][1] == "com.example.MyApp"

    @pytest.mark.asyncio
    async def test_raw_string_entries(self):
        result = await assert_log_contains(FakeDevice(logs=LOGS), "login token")
        assert result.passed is True

    @pytest.mark.asyncio
    async def test_not_found_fails_without_polling(self):
        result = await assert_log_contains(FakeDevice(logs=LOGS), "crash")
        assert result.passed is False
        assert result.status == "failed"
        assert result.message == 'Pattern "crash" not found in logs'

    @pytest.mark.asyncio
    async def test_min_matches(self):
        result = await assert_log_contains(FakeDevice(logs=LOGS), "a", min_matches=10)
        assert result.passed is False
        assert result.message.startswith("Found 3 match(es) but required 10")

    @pytest.mark.asyncio
    async def test_not_contains(self):
        passed = await assert_log_contains(FakeDevice(logs=LOGS), "fatal", not_contains=True)
        assert passed.passed is True
        assert passed.type == "log-not-contains"

        failed = await assert_log_contains(FakeDevice(logs=LOGS), "sync", not_contains=True)
        assert failed.passed is False
        assert failed.message == 'Found 1 unexpected match(es) for "sync"'

    @pytest.mark.asyncio
    async def test_invalid_regex_is_error_result(self):
        result = await assert_log_contains(FakeDevice(logs=LOGS), "([", match_mode="regex")
        assert result.status == "error"
        assert result.message.startswith("Error during log-contains assertion: Invalid regex pattern")

    @pytest.mark.asyncio
    async def test_read_failure(self):
        result = await assert_log_contains(FakeDevice(fail={"read_logs"}), "x")
        assert result.passed is False
        assert result.message == "read_logs failed"

    @pytest.mark.asyncio
    async def test_polling_times_out(self):
        result = await assert_log_contains(FakeDevice(logs=LOGS), "never", polling=FAST)
        assert result.status == "timeout"
        assert len(result.attempts) >= 2

    @pytest.mark.asyncio
    async def test_default_since_is_one_minute_back(self):
        device = FakeDevice(logs=LOGS)
        before = dt.datetime.now(dt.timezone.utc)
        await assert_log_contains(device, "App")
        since = device.calls[0][1][0]
        assert before - dt.timedelta(minutes=1, seconds=5) <= since <= before


class TestAssertNoCrash:
    @pytest.mark.asyncio
    async def test_no_crash(self):
        result = await assert_no_crash(FakeDevice(), "com.example.app")
        assert result.passed is True
        assert result.type == "no-crash"
        assert result.data["crash_count"] == 0

    @pytest.mark.asyncio
    async def test_crash_detected(self):
        crashes = [
            {"timestamp": "2026-10-19 10:00:00", "exception_type": "EXC_BAD_ACCESS"},
            {"timestamp": "2026-10-19 09:00:00"},
        ]
        result = await assert_no_crash(FakeDevice(crashes=crashes), "com.example.app")
        assert result.passed is False
        assert result.message == (
            'App "com.example.app" crashed at 2026-10-19 10:00:00 (EXC_BAD_ACCESS) (2 crashes detected)'
        )
        assert result.data["crash_count"] == 2

    @pytest.mark.asyncio
    async def test_crash_scan_failure(self):
        result = await assert_no_crash(FakeDevice(fail={"crash_reports"}), "com.example.app")
        assert result.passed is False
        assert result.message == "crash_reports failed"


# ---------------------------------------------------------------------------
# 5. ios.* action handlers
# ---------------------------------------------------------------------------

class TestDeviceActions:
    """device_actions exposes device operations and assertions as handlers."""

    def test_handlers_without_inspector(self):
        handlers = device_actions(FakeDevice())
        assert "ios.launch" in handlers
        assert "ios.assert_no_crash" in handlers
        assert "ios.assert_visible" not in handlers

    def test_handlers_with_inspector(self):
        handlers = device_actions(FakeDevice(), FakeInspector(screen()))
        assert {"ios.assert_visible", "ios.assert_not_visible", "ios.assert_hittable"} <= set(handlers)

    @pytest.mark.asyncio
    async def test_launch_uses_fallback_bundle_id(self):
        device = FakeDevice()
        handlers = device_actions(device, bundle_id="com.example.app")
        outcome = await handlers["ios.launch"](_make_context(), {}, None)
        assert outcome.success is True
        assert device.calls == [("launch_app", ("com.example.app",))]

    @pytest.mark.asyncio
    async def test_launch_without_bundle_id(self):
        outcome = await device_actions(FakeDevice())["ios.launch"](_make_context(), {}, None)
        assert outcome.success is False
        assert outcome.error == "launch requires a 'bundle_id' input"

    @pytest.mark.asyncio
    async def test_tap_coordinates(self):
        device = FakeDevice()
        outcome = await device_actions(device)["ios.tap"](_make_context(), {"x": 10, "y": "20"}, None)
        assert outcome.success is True
        assert device.calls == [("tap", (10.0, 20.0))]

    @pytest.mark.asyncio
    async def test_tap_element_target(self):
        device = FakeDevice()
        handlers = device_actions(device, FakeInspector(screen(LOGIN)))
        outcome = await handlers["ios.tap"](_make_context(), {"identifier": "login_button"}, None)
        assert outcome.success is True
        assert device.calls == [("tap", (140, 625))]

    @pytest.mark.asyncio
    async def test_tap_missing_element(self):
        handlers = device_actions(FakeDevice(), FakeInspector(screen()))
        outcome = await handlers["ios.tap"](_make_context(), {"target": {"label": "Nope"}}, None)
        assert outcome.success is False
        assert outcome.error == 'Element not found: label="Nope"'

    @pytest.mark.asyncio
    async def test_type_requires_text(self):
        outcome = await device_actions(FakeDevice())["ios.type"](_make_context(), {}, None)
        assert outcome.success is False

    @pytest.mark.asyncio
    async def test_screenshot_goes_to_artifacts_dir(self, tmp_path: Path):
        device = FakeDevice()
        ctx = _make_context(artifacts_dir=tmp_path)
        outcome = await device_actions(device)["ios.screenshot"](ctx, {"name": "home"}, None)
        assert outcome.data == {"path": str(tmp_path / "home.png")}

    @pytest.mark.asyncio
    async def test_assert_visible_action_uses_step_timeout(self):
        handlers = device_actions(FakeDevice(), FakeInspector(screen()), polling=PollingOptions(timeout=5000))
        outcome = await handlers["ios.assert_visible"](
            _make_context(), {"identifier": "x", "timeout": 60, "poll_interval": 20}, None
        )
        assert outcome.success is False
        assert outcome.data["status"] == "timeout"
        assert outcome.error == 'Timeout after 60ms waiting for visible on identifier="x"'

    @pytest.mark.asyncio
    async def test_log_action_checks_once_without_timeout(self):
        device = FakeDevice(logs=LOGS)
        outcome = await device_actions(device)["ios.assert_log_contains"](
            _make_context(), {"pattern": "Sync"}, None
        )
        assert outcome.success is True
        assert len(outcome.data["attempts"]) == 1

    @pytest.mark.asyncio
    async def test_no_crash_action(self):
        outcome = await device_actions(FakeDevice(), bundle_id="com.example.app")["ios.assert_no_crash"](
            _make_context(), {}, None
        )
        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_verification_outcome_mapping(self):
        result = await assert_no_crash(FakeDevice(crashes=[{"timestamp": "t"}]), "app")
        outcome = verification_outcome(result)
        assert outcome.success is False
        assert outcome.error == result.message
        assert outcome.data["id"] == result.id
