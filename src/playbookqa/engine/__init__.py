"""PlaybookQA engine -- playbook execution and verification.

Provides:
- PlaybookRunner: loads a playbook, validates inputs, runs it, writes artifacts
- Step engine: conditions, loops, on_failure, next, store_as, per-step timeouts
- Expression resolver: ``{{ expr | filter }}`` templates over the run context
- ActionRegistry: name-keyed action handlers with the built-in actions
- Verification: poll-until-condition primitive and assertion result builders
- Assertions: visibility, hittability, log and crash checks as ``ios.*`` actions
- ReportGenerator: markdown and text summaries of run results
"""

from playbookqa.engine.assertions import device_actions
from playbookqa.engine.context import (
    ExecutionContext,
    LoopFrame,
    PlaybookRunResult,
    ProgressEvent,
    StepEvent,
    StepResult,
)
from playbookqa.engine.expressions import MISSING, evaluate_condition, resolve_object, resolve_value
from playbookqa.engine.playbook_loader import (
    Playbook,
    PlaybookLoadError,
    StepDef,
    list_playbooks,
    load_playbook,
    validate_playbook,
)
from playbookqa.engine.protocols import ActionHandler, ActionOutcome, DeviceController, DeviceResult, UIInspector
from playbookqa.engine.registry import ActionRegistry, builtin_registry
from playbookqa.engine.report_generator import ReportGenerator
from playbookqa.engine.runner import PlaybookRunner, run_playbook
from playbookqa.engine.verification import (
    PollingOptions,
    RetryPolicy,
    VerificationResult,
    poll_until,
    verify_with_polling_and_retry,
    with_retry,
)

# SimctlController is NOT eagerly imported here because it shells out to
# Xcode tools.  Import it from playbookqa.engine.simulator when needed.

__all__ = [
    "MISSING",
    "ActionHandler",
    "ActionOutcome",
    "ActionRegistry",
    "DeviceController",
    "DeviceResult",
    "ExecutionContext",
    "LoopFrame",
    "Playbook",
    "PlaybookLoadError",
    "PlaybookRunResult",
    "PlaybookRunner",
    "PollingOptions",
    "ProgressEvent",
    "ReportGenerator",
    "RetryPolicy",
    "StepDef",
    "StepEvent",
    "StepResult",
    "UIInspector",
    "VerificationResult",
    "builtin_registry",
    "device_actions",
    "evaluate_condition",
    "list_playbooks",
    "load_playbook",
    "poll_until",
    "resolve_object",
    "resolve_value",
    "run_playbook",
    "validate_playbook",
    "verify_with_polling_and_retry",
    "with_retry",
]
