"""Unit tests for playbookqa.models -- engine default constants."""

from __future__ import annotations

from playbookqa.models import (
    ACTION_NAMESPACE,
    BUILTIN_PLAYBOOKS,
    DEFAULT_LOOP_TIMEOUT_MS,
    DEFAULT_LOOP_VARIABLE,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_POLL_TIMEOUT_MS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_INITIAL_DELAY_MS,
    DEFAULT_RETRY_MAX_DELAY_MS,
    DEFAULT_SCREEN_SIZE,
    DEFAULT_STEP_TIMEOUT_MS,
    INPUT_TYPES,
)


# ---------------------------------------------------------------------------
# 1. Timeouts
# ---------------------------------------------------------------------------

class TestTimeouts:
    def test_step_and_loop_timeouts_are_five_minutes(self):
        assert DEFAULT_STEP_TIMEOUT_MS == 300_000
        assert DEFAULT_LOOP_TIMEOUT_MS == 300_000

    def test_poll_interval_shorter_than_timeout(self):
        assert 0 < DEFAULT_POLL_INTERVAL_MS < DEFAULT_POLL_TIMEOUT_MS

    def test_retry_delays_are_ordered(self):
        assert DEFAULT_RETRY_ATTEMPTS >= 1
        assert DEFAULT_RETRY_INITIAL_DELAY_MS <= DEFAULT_RETRY_MAX_DELAY_MS


# ---------------------------------------------------------------------------
# 2. Naming constants
# ---------------------------------------------------------------------------

class TestNaming:
    def test_loop_variable_and_namespace(self):
        assert DEFAULT_LOOP_VARIABLE == "item"
        assert ACTION_NAMESPACE == "ios"

    def test_input_types(self):
        assert set(INPUT_TYPES) == {"string", "number", "boolean", "array", "object"}

    def test_builtin_playbooks_are_unique(self):
        assert len(set(BUILTIN_PLAYBOOKS)) == len(BUILTIN_PLAYBOOKS)
        assert "Common" not in BUILTIN_PLAYBOOKS

    def test_screen_size_is_portrait(self):
        width, height = DEFAULT_SCREEN_SIZE
        assert 0 < width < height
