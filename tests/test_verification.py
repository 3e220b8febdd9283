"""Unit tests for playbookqa.engine.verification -- polling, retry and result builders."""

from __future__ import annotations

import datetime as dt
import re

import pytest

from playbookqa.engine.verification import (
    CheckResult,
    PollingOptions,
    PollOutcome,
    RetryExhaustedError,
    RetryPolicy,
    VerificationStatus,
    calculate_retry_delay,
    classify_outcome,
    create_error_result,
    create_failed_result,
    create_passed_result,
    create_timeout_result,
    generate_verification_id,
    merge_polling_options,
    merge_retry_policy,
    poll_until,
    verify_with_polling_and_retry,
    with_retry,
)
from playbookqa.models import DEFAULT_POLL_INTERVAL_MS, DEFAULT_POLL_TIMEOUT_MS


FAST = PollingOptions(timeout=200, poll_interval=50)


def _counting_check(passes_on: int | None):
    """A check that passes on its *passes_on*-th call (never, if None)."""
    calls = {"n": 0}

    async def check() -> CheckResult:
        calls["n"] += 1
        if passes_on is not None and calls["n"] >= passes_on:
            return CheckResult(passed=True, data={"call": calls["n"]})
        return CheckResult(passed=False, error=f"not yet ({calls['n']})", data={"call": calls["n"]})

    return check, calls


# ---------------------------------------------------------------------------
# 1. poll_until
# ---------------------------------------------------------------------------

class TestPollUntil:
    """poll_until invokes the check until it passes or the deadline elapses."""

    @pytest.mark.asyncio
    async def test_immediate_pass_is_one_attempt(self):
        check, calls = _counting_check(1)
        outcome = await poll_until(check, FAST)
        assert outcome.passed is True
        assert len(outcome.attempts) == 1
        assert outcome.attempts[0].attempt == 1
        assert outcome.attempts[0].success is True
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_never_passing_times_out(self):
        check, _ = _counting_check(None)
        outcome = await poll_until(check, FAST)
        assert outcome.passed is False
        assert len(outcome.attempts) >= 3
        assert outcome.duration >= 200
        assert classify_outcome(outcome, FAST) == VerificationStatus.TIMEOUT
        assert outcome.attempts[-1].error.startswith("not yet")

    @pytest.mark.asyncio
    async def test_passes_on_third_attempt(self):
        check, _ = _counting_check(3)
        outcome = await poll_until(check, {"timeout": 2000, "poll_interval": 10})
        assert outcome.passed is True
        assert [a.attempt for a in outcome.attempts] == [1, 2, 3]
        assert [a.success for a in outcome.attempts] == [False, False, True]
        assert outcome.last_data == {"call": 3}

    @pytest.mark.asyncio
    async def test_raising_check_is_a_failed_attempt(self):
        calls = {"n": 0}

        def check():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("device busy")
            return {"passed": True}

        outcome = await poll_until(check, {"timeout": 1000, "poll_interval": 10})
        assert outcome.passed is True
        assert outcome.attempts[0].success is False
        assert outcome.attempts[0].error == "device busy"

    @pytest.mark.asyncio
    async def test_attempt_timestamps_are_iso(self):
        check, _ = _counting_check(1)
        outcome = await poll_until(check, FAST)
        dt.datetime.fromisoformat(outcome.attempts[0].timestamp)


# ---------------------------------------------------------------------------
# 2. Option merging
# ---------------------------------------------------------------------------

class TestMergePollingOptions:
    def test_none_gives_defaults(self):
        opts = merge_polling_options(None)
        assert opts.timeout == DEFAULT_POLL_TIMEOUT_MS
        assert opts.poll_interval == DEFAULT_POLL_INTERVAL_MS

    def test_mapping_with_camel_case_interval(self):
        opts = merge_polling_options({"timeout": 300, "pollInterval": 25})
        assert (opts.timeout, opts.poll_interval) == (300, 25)

    def test_none_values_ignored(self):
        opts = merge_polling_options({"timeout": None, "poll_interval": 40}, PollingOptions(timeout=900))
        assert (opts.timeout, opts.poll_interval) == (900, 40)

    def test_defaults_not_mutated(self):
        defaults = PollingOptions(timeout=900)
        merge_polling_options({"timeout": 1}, defaults)
        assert defaults.timeout == 900

    def test_merge_retry_policy_mapping(self):
        policy = merge_retry_policy({"max_attempts": 5, "unknown": 1})
        assert policy.max_attempts == 5
        assert policy.initial_delay == RetryPolicy().initial_delay


# ---------------------------------------------------------------------------
# 3. Retry
# ---------------------------------------------------------------------------

class TestRetry:
    """with_retry re-awaits failing operations with backoff."""

    @pytest.mark.parametrize(("attempt", "expected"), [(1, 500), (2, 1000), (3, 2000), (4, 4000), (5, 5000)])
    def test_exponential_delay_is_capped(self, attempt, expected):
        assert calculate_retry_delay(attempt) == expected

    def test_linear_delay(self):
        assert calculate_retry_delay(4, RetryPolicy(exponential_backoff=False)) == 500

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise ConnectionError("simulator not ready")
            return "ok"

        assert await with_retry(flaky, {"initial_delay": 1}) == "ok"
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_exhausted(self):
        async def broken():
            raise ConnectionError("gone")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(broken, RetryPolicy(max_attempts=2, initial_delay=1))
        assert exc_info.value.attempts == 2
        assert exc_info.value.last_error == "gone"
        assert str(exc_info.value) == "Failed after 2 attempts: gone"


# ---------------------------------------------------------------------------
# 4. Polling with retry
# ---------------------------------------------------------------------------

class TestVerifyWithPollingAndRetry:
    @pytest.mark.asyncio
    async def test_all_rounds_fail(self):
        check, _ = _counting_check(None)
        outcome = await verify_with_polling_and_retry(
            check,
            {"timeout": 30, "poll_interval": 10},
            {"max_attempts": 2, "initial_delay": 1},
        )
        assert outcome.passed is False
        assert [a.attempt for a in outcome.attempts] == list(range(1, len(outcome.attempts) + 1))
        assert len(outcome.attempts) >= 2

    @pytest.mark.asyncio
    async def test_passes_in_later_round(self):
        check, calls = _counting_check(4)
        outcome = await verify_with_polling_and_retry(
            check,
            {"timeout": 25, "poll_interval": 10},
            {"max_attempts": 10, "initial_delay": 1},
        )
        assert outcome.passed is True
        assert outcome.attempts[-1].success is True
        assert outcome.attempts[-1].attempt == calls["n"]


# ---------------------------------------------------------------------------
# 5. Result builders
# ---------------------------------------------------------------------------

class TestResultBuilders:
    """VerificationResult construction and classification."""

    def _common(self, **overrides):
        defaults = {
            "id": "visible-x-0001",
            "start_time": dt.datetime.now(dt.timezone.utc),
            "attempts": [],
        }
        defaults.update(overrides)
        return defaults

    def test_generate_id_format(self):
        first = generate_verification_id("visible")
        second = generate_verification_id("visible")
        assert re.match(r"^visible-[0-9a-z]+-[0-9a-z]{4,}$", first)
        assert first != second

    def test_passed_result(self):
        result = create_passed_result(type="visible", target="login", **self._common())
        assert result.passed is True
        assert result.status == VerificationStatus.PASSED
        assert result.message == "visible assertion passed for login"
        assert result.duration >= 0

    def test_failed_result(self):
        result = create_failed_result(type="visible", target="login", message="nope", **self._common())
        assert result.passed is False
        assert result.status == "failed"
        assert result.message == "nope"

    def test_timeout_result(self):
        result = create_timeout_result(type="visible", target="login", timeout=500, **self._common())
        assert result.status == "timeout"
        assert result.message == "Timeout after 500ms waiting for visible on login"

    def test_error_result(self):
        result = create_error_result(type="log-contains", target="x", error="bad regex", **self._common())
        assert result.status == "error"
        assert result.passed is False
        assert result.message == "Error during log-contains assertion: bad regex"

    def test_to_dict(self):
        result = create_passed_result(type="visible", target="login", data={"k": 1}, **self._common())
        data = result.to_dict()
        assert data["type"] == "visible"
        assert data["data"] == {"k": 1}
        assert data["attempts"] == []

    def test_classify_failed_before_deadline(self):
        outcome = PollOutcome(passed=False, duration=10)
        assert classify_outcome(outcome, PollingOptions(timeout=100)) == VerificationStatus.FAILED

    def test_check_result_coerce(self):
        assert CheckResult.coerce({"passed": True, "data": 1}) == CheckResult(passed=True, data=1)
        assert CheckResult.coerce(False) == CheckResult(passed=False)
