"""PlaybookQA Report Generator -- renders run and verification results.

Markdown (``report.md``), plain text (``summary.txt``), JSON (``result.json``)
and one-line compact forms of a PlaybookRunResult, plus formatters for
assertion VerificationResults.
"""

from __future__ import annotations

import dataclasses
import json
from pathlib import Path
from typing import Any

from playbookqa.engine.context import PlaybookRunResult, StepResult
from playbookqa.engine.verification import VerificationResult


def format_duration(ms: float) -> str:
    """``850ms``, ``1.5s`` or ``2m 5s``."""
    if ms < 1000:
        return f"{ms:.0f}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    minutes = int(ms // 60_000)
    seconds = (ms % 60_000) / 1000
    return f"{minutes}m {seconds:.0f}s"


def json_default(obj: Any) -> Any:
    """``json.dumps`` fallback for paths, dataclasses and other objects."""
    if isinstance(obj, Path):
        return str(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, tuple)):
        return list(obj)
    return str(obj)


def _step_status(step: StepResult) -> str:
    if step.skipped:
        return "SKIP"
    return "PASS" if step.success else "FAIL"


class ReportGenerator:
    """Generates markdown reports from playbook run results."""

    def generate(self, result: PlaybookRunResult) -> str:
        """Generate a complete report in markdown format.

        Args:
            result: The PlaybookRunResult to report on.

        Returns:
            Complete markdown report as a string.
        """
        sections = [
            self._header(result),
            self._summary_table(result),
            self._step_results(result),
            self._collected_section(result),
            self._error_section(result),
            self._artifacts_section(result),
        ]
        return "\n\n".join(s for s in sections if s) + "\n"

    def _header(self, r: PlaybookRunResult) -> str:
        verdict = "PASS" if r.passed else "FAIL"
        lines = [f"# Playbook Report: {r.playbook_name}", ""]
        if r.playbook_version:
            lines.append(f"**Version:** {r.playbook_version}")
        if r.playbook_path:
            lines.append(f"**Path:** {r.playbook_path}")
        lines.append(f"**Verdict:** {verdict}")
        return "\n".join(lines)

    def _summary_table(self, r: PlaybookRunResult) -> str:
        return "\n".join(
            [
                "## Summary",
                "| Metric | Value |",
                "|--------|-------|",
                f"| Status | {'PASSED' if r.passed else 'FAILED'} |",
                f"| Steps Executed | {r.steps_executed} |",
                f"| Steps Passed | {r.steps_passed} |",
                f"| Steps Failed | {r.steps_failed} |",
                f"| Steps Skipped | {r.steps_skipped} |",
                f"| Duration | {format_duration(r.total_duration)} |",
            ]
        )

    def _step_results(self, r: PlaybookRunResult) -> str:
        if not r.step_results:
            return ""
        lines = [
            "## Step Results",
            "| Step | Action | Result | Duration | Notes |",
            "|------|--------|--------|----------|-------|",
        ]
        for step in r.step_results:
            if step.skipped:
                notes = f"skipped: {step.skip_reason}"
            else:
                notes = step.error or ""
            if step.loop_context:
                notes = f"[{step.loop_context['as']} #{step.loop_context['index']}] {notes}".strip()
            if len(notes) > 80:
                notes = notes[:77] + "..."
            notes = notes.replace("|", "\\|")
            lines.append(
                f"| {step.name} | {step.action or '-'} | {_step_status(step)} | {format_duration(step.duration)} | {notes} |"
            )
        return "\n".join(lines)

    def _collected_section(self, r: PlaybookRunResult) -> str:
        if not r.collected:
            return ""
        lines = ["## Collected", ""]
        for key, values in r.collected.items():
            lines.append(f"- **{key}**: {len(values)} item(s)")
        return "\n".join(lines)

    def _error_section(self, r: PlaybookRunResult) -> str:
        if not r.error:
            return ""
        return f"## Error\n\n```\n{r.error}\n```"

    def _artifacts_section(self, r: PlaybookRunResult) -> str:
        if not r.artifacts_dir:
            return ""
        return f"## Artifacts\n\n- Directory: `{r.artifacts_dir}`"


def format_playbook_result(result: PlaybookRunResult) -> str:
    return ReportGenerator().generate(result)


def format_playbook_result_as_json(result: PlaybookRunResult) -> str:
    return json.dumps(dataclasses.asdict(result), indent=2, default=json_default)


def format_playbook_result_as_text(result: PlaybookRunResult) -> str:
    """Plain-text summary, as written to ``summary.txt``."""
    rule, thin = "=" * 60, "-" * 40
    lines = [
        rule,
        f"PLAYBOOK: {result.playbook_name}",
        rule,
        "",
        f"Status: {'PASSED' if result.passed else 'FAILED'}",
        f"Duration: {format_duration(result.total_duration)}",
        "",
        thin,
        "STEPS",
        thin,
        f"  Executed: {result.steps_executed}",
        f"  Passed: {result.steps_passed}",
        f"  Failed: {result.steps_failed}",
        f"  Skipped: {result.steps_skipped}",
        "",
    ]

    if result.step_results:
        lines += [thin, "STEP DETAILS", thin]
        for step in result.step_results:
            lines.append(f"  [{_step_status(step)}] {step.name}")
            if step.error:
                lines.append(f"         Error: {step.error}")
            if step.skip_reason:
                lines.append(f"         Reason: {step.skip_reason}")
        lines.append("")

    if result.error:
        lines += [thin, "ERROR", thin, result.error, ""]

    lines.append(rule)
    return "\n".join(lines)


def format_playbook_result_compact(result: PlaybookRunResult) -> str:
    """``[PASS] name: 3/3 steps, 1.2s``"""
    status = "PASS" if result.passed else "FAIL"
    return (
        f"[{status}] {result.playbook_name}: {result.steps_passed}/{result.steps_executed} steps, "
        f"{format_duration(result.total_duration)}"
    )


# ---------------------------------------------------------------------------
# Verification results
# ---------------------------------------------------------------------------

def format_verification_result(result: VerificationResult) -> str:
    verdict = result.status.upper()
    lines = [
        f"## {result.type}: {verdict}",
        "",
        f"- **Target:** {result.target}",
        f"- **Message:** {result.message}",
        f"- **Duration:** {format_duration(result.duration)}",
        f"- **Attempts:** {len(result.attempts)}",
    ]
    failed = [a for a in result.attempts if not a.success and a.error]
    if failed:
        lines.append(f"- **Last error:** {failed[-1].error}")
    return "\n".join(lines)


def format_verification_compact(result: VerificationResult) -> str:
    return (
        f"[{result.status.upper()}] {result.type} {result.target}: "
        f"{len(result.attempts)} attempt(s), {format_duration(result.duration)}"
    )
