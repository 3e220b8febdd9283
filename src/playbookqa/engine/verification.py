"""PlaybookQA Verification -- poll-until-condition primitive shared by assertions.

Every UI or log assertion reduces to a ``check`` callable that reports
``passed``/``error``/``data``.  ``poll_until`` invokes it at a fixed interval
until it passes or the deadline elapses, recording each invocation as a
``VerificationAttempt``.  Callers turn the outcome into a ``VerificationResult``
with one of the builders below (``classify_outcome`` applies the standard
passed / timeout / failed rule).
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import inspect
import itertools
import logging
import time
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Union

from playbookqa.models import (
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_POLL_TIMEOUT_MS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF,
    DEFAULT_RETRY_INITIAL_DELAY_MS,
    DEFAULT_RETRY_MAX_DELAY_MS,
)

logger = logging.getLogger("playbookqa.engine.verification")


class RetryExhaustedError(Exception):
    """Raised by ``with_retry`` when every attempt failed."""

    def __init__(self, attempts: int, last_error: str | None) -> None:
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class PollingOptions:
    """Polling settings, in milliseconds."""

    timeout: int = DEFAULT_POLL_TIMEOUT_MS
    poll_interval: int = DEFAULT_POLL_INTERVAL_MS
    description: str = "condition"


@dataclasses.dataclass
class RetryPolicy:
    """Retry settings for transient failures, in milliseconds."""

    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    initial_delay: int = DEFAULT_RETRY_INITIAL_DELAY_MS
    max_delay: int = DEFAULT_RETRY_MAX_DELAY_MS
    backoff_multiplier: float = DEFAULT_RETRY_BACKOFF
    exponential_backoff: bool = True


@dataclasses.dataclass
class CheckResult:
    """What one invocation of a verification check reports."""

    passed: bool
    error: str | None = None
    data: Any = None

    @classmethod
    def coerce(cls, value: Any) -> CheckResult:
        if isinstance(value, CheckResult):
            return value
        if isinstance(value, Mapping):
            return cls(passed=bool(value.get("passed")), error=value.get("error"), data=value.get("data"))
        return cls(passed=bool(value))


@dataclasses.dataclass
class VerificationAttempt:
    """One invocation of a poll check."""

    attempt: int  # 1-based
    timestamp: str
    success: bool
    duration: float
    error: str | None = None
    details: Any = None


@dataclasses.dataclass
class PollOutcome:
    """Raw result of ``poll_until``, before classification."""

    passed: bool
    duration: float
    attempts: list[VerificationAttempt] = dataclasses.field(default_factory=list)
    last_data: Any = None


class VerificationStatus:
    PASSED = "passed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclasses.dataclass
class VerificationResult:
    """Terminal verdict of an assertion."""

    id: str
    type: str
    status: str
    passed: bool
    message: str
    target: str
    start_time: str
    end_time: str
    duration: float
    attempts: list[VerificationAttempt] = dataclasses.field(default_factory=list)
    data: Any = None
    artifacts: dict[str, list[str]] | None = None
    simulator: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


CheckCallable = Callable[[], Union[CheckResult, Mapping, Awaitable[Any]]]


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

def merge_polling_options(
    options: PollingOptions | Mapping[str, Any] | None,
    defaults: PollingOptions | None = None,
) -> PollingOptions:
    """Overlay *options* on *defaults* (or the built-in defaults).

    Accepts a ``PollingOptions``, a mapping (``timeout``, ``poll_interval``
    or ``pollInterval``, ``description``) or None.  None values are ignored.
    """
    base = dataclasses.replace(defaults) if defaults is not None else PollingOptions()
    if options is None:
        return base
    if isinstance(options, PollingOptions):
        overrides = dataclasses.asdict(options)
    else:
        overrides = dict(options)
        if "pollInterval" in overrides:
            overrides.setdefault("poll_interval", overrides.pop("pollInterval"))
    for key in ("timeout", "poll_interval", "description"):
        if overrides.get(key) is not None:
            setattr(base, key, overrides[key])
    return base


def merge_retry_policy(policy: RetryPolicy | Mapping[str, Any] | None) -> RetryPolicy:
    if policy is None:
        return RetryPolicy()
    if isinstance(policy, RetryPolicy):
        return policy
    known = {f.name for f in dataclasses.fields(RetryPolicy)}
    return RetryPolicy(**{k: v for k, v in policy.items() if k in known and v is not None})


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


async def _invoke_check(check: CheckCallable) -> CheckResult:
    result = check()
    if inspect.isawaitable(result):
        result = await result
    return CheckResult.coerce(result)


async def poll_until(
    check: CheckCallable,
    options: PollingOptions | Mapping[str, Any] | None = None,
) -> PollOutcome:
    """Invoke *check* every ``poll_interval`` ms until it passes or ``timeout`` elapses.

    A check that raises is recorded as a failed attempt and polling continues.

    Args:
        check: Sync or async callable returning a ``CheckResult`` or a
            ``{passed, error?, data?}`` mapping.
        options: Polling options, merged over the defaults.

    Returns:
        PollOutcome with every attempt and the last reported data.
    """
    opts = merge_polling_options(options)
    start = time.monotonic()
    attempts: list[VerificationAttempt] = []
    last_data: Any = None

    logger.debug(
        "Polling for %s (timeout: %dms, interval: %dms)",
        opts.description,
        opts.timeout,
        opts.poll_interval,
    )

    def elapsed_ms() -> float:
        return (time.monotonic() - start) * 1000

    while elapsed_ms() < opts.timeout:
        attempt_num = len(attempts) + 1
        attempt_start = time.monotonic()
        try:
            result = await _invoke_check(check)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            attempts.append(
                VerificationAttempt(
                    attempt=attempt_num,
                    timestamp=_now_iso(),
                    success=False,
                    duration=(time.monotonic() - attempt_start) * 1000,
                    error=str(exc),
                )
            )
            logger.debug("Attempt %d threw: %s", attempt_num, exc)
        else:
            attempts.append(
                VerificationAttempt(
                    attempt=attempt_num,
                    timestamp=_now_iso(),
                    success=result.passed,
                    duration=(time.monotonic() - attempt_start) * 1000,
                    error=result.error,
                    details=result.data,
                )
            )
            last_data = result.data
            if result.passed:
                duration = elapsed_ms()
                logger.info("Condition met after %d attempt(s) in %dms", attempt_num, duration)
                return PollOutcome(passed=True, duration=duration, attempts=attempts, last_data=last_data)
            logger.debug(
                "Attempt %d: condition not met%s",
                attempt_num,
                f" ({result.error})" if result.error else "",
            )

        await asyncio.sleep(opts.poll_interval / 1000)

    duration = elapsed_ms()
    logger.warning("Polling timed out after %dms (%d attempts)", duration, len(attempts))
    return PollOutcome(passed=False, duration=duration, attempts=attempts, last_data=last_data)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

def calculate_retry_delay(attempt: int, policy: RetryPolicy | None = None) -> float:
    """Delay in ms before retry number *attempt* (1-based)."""
    opts = merge_retry_policy(policy)
    if not opts.exponential_backoff:
        return opts.initial_delay
    delay = opts.initial_delay * (opts.backoff_multiplier ** (attempt - 1))
    return min(delay, opts.max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy | Mapping[str, Any] | None = None,
) -> Any:
    """Await *operation* until it returns without raising.

    Raises:
        RetryExhaustedError: when ``max_attempts`` attempts all raised.
    """
    opts = merge_retry_policy(policy)
    last_error: str | None = None

    for attempt in range(1, opts.max_attempts + 1):
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = str(exc)
            logger.debug("Attempt %d/%d failed: %s", attempt, opts.max_attempts, last_error)
        else:
            if attempt > 1:
                logger.info("Operation succeeded on attempt %d", attempt)
            return result

        if attempt < opts.max_attempts:
            await asyncio.sleep(calculate_retry_delay(attempt, opts) / 1000)

    raise RetryExhaustedError(opts.max_attempts, last_error)


async def verify_with_polling_and_retry(
    check: CheckCallable,
    polling: PollingOptions | Mapping[str, Any] | None = None,
    retry: RetryPolicy | Mapping[str, Any] | None = None,
) -> PollOutcome:
    """Poll for *check*, retrying the whole poll when it ends without passing.

    The returned outcome carries the attempts of every poll round.  When all
    rounds fail it is a non-passing outcome with the combined duration.
    """
    rounds: list[PollOutcome] = []

    async def poll_once() -> PollOutcome:
        outcome = await poll_until(check, polling)
        rounds.append(outcome)
        if not outcome.passed:
            raise RuntimeError("Condition not met within timeout")
        return outcome

    start = time.monotonic()
    try:
        await with_retry(poll_once, retry)
        passed = True
    except RetryExhaustedError as exc:
        logger.warning("Verification failed: %s", exc)
        passed = False

    attempts = [a for outcome in rounds for a in outcome.attempts]
    for number, attempt in enumerate(attempts, start=1):
        attempt.attempt = number
    return PollOutcome(
        passed=passed,
        duration=(time.monotonic() - start) * 1000,
        attempts=attempts,
        last_data=rounds[-1].last_data if rounds else None,
    )


# ---------------------------------------------------------------------------
# Result builders
# ---------------------------------------------------------------------------

_id_counter = itertools.count(1)


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out


def generate_verification_id(type: str) -> str:
    """Unique id of the form ``<type>-<base36 ms>-<base36 counter>``."""
    timestamp = _base36(int(time.time() * 1000))
    counter = _base36(next(_id_counter)).rjust(4, "0")
    return f"{type}-{timestamp}-{counter}"


def build_verification_result(
    *,
    id: str,
    type: str,
    target: str,
    status: str,
    message: str,
    start_time: dt.datetime,
    attempts: list[VerificationAttempt],
    data: Any = None,
    artifacts: dict[str, list[str]] | None = None,
    simulator: dict[str, str] | None = None,
) -> VerificationResult:
    end_time = dt.datetime.now(dt.timezone.utc)
    return VerificationResult(
        id=id,
        type=type,
        status=status,
        passed=status == VerificationStatus.PASSED,
        message=message,
        target=target,
        start_time=start_time.isoformat(),
        end_time=end_time.isoformat(),
        duration=(end_time - start_time).total_seconds() * 1000,
        attempts=attempts,
        data=data,
        artifacts=artifacts,
        simulator=simulator,
    )


def create_passed_result(*, type: str, target: str, message: str | None = None, **kwargs: Any) -> VerificationResult:
    return build_verification_result(
        type=type,
        target=target,
        status=VerificationStatus.PASSED,
        message=message or f"{type} assertion passed for {target}",
        **kwargs,
    )


def create_failed_result(*, message: str, **kwargs: Any) -> VerificationResult:
    return build_verification_result(status=VerificationStatus.FAILED, message=message, **kwargs)


def create_timeout_result(*, type: str, target: str, timeout: int, **kwargs: Any) -> VerificationResult:
    return build_verification_result(
        type=type,
        target=target,
        status=VerificationStatus.TIMEOUT,
        message=f"Timeout after {timeout}ms waiting for {type} on {target}",
        **kwargs,
    )


def create_error_result(*, type: str, error: str, **kwargs: Any) -> VerificationResult:
    return build_verification_result(
        type=type,
        status=VerificationStatus.ERROR,
        message=f"Error during {type} assertion: {error}",
        **kwargs,
    )


def classify_outcome(outcome: PollOutcome, options: PollingOptions) -> str:
    """passed if the check passed; timeout if the deadline was reached; else failed."""
    if outcome.passed:
        return VerificationStatus.PASSED
    if outcome.duration >= options.timeout:
        return VerificationStatus.TIMEOUT
    return VerificationStatus.FAILED
