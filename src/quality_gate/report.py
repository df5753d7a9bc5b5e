"""Security gate and deployment run report generator.

Produces Markdown from gate results and deployment records, suitable for
CI step summaries or pull request comments.

This module contains only pure functions -- no I/O, no side effects.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from src.release_shared.constants import ENVIRONMENT_DISPLAY_NAMES
from src.release_shared.models import (
    GateResult,
    GateViolation,
    NormalizedScanResult,
    ScanMetric,
    ScanTool,
)

if TYPE_CHECKING:
    from src.release_orchestrator.state import DeploymentRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_PASSED = "✅ PASSED"
_BLOCKED = "❌ BLOCKED"
_WARNING = "⚠️ WARNING"

_STATE_DISPLAY: dict[str, str] = {
    "succeeded": "✅ SUCCEEDED",
    "rolled_back": "↩️ ROLLED BACK",
    "failed": "❌ FAILED",
    "blocked": "⛔ BLOCKED",
    "cancelled": "⏹️ CANCELLED",
}

_TOOL_DISPLAY: dict[ScanTool, str] = {
    ScanTool.BUILD: "Build / Tests",
    ScanTool.CODE_QUALITY: "Code Quality",
    ScanTool.SAST: "SAST",
    ScanTool.SCA: "Dependency Scan",
    ScanTool.IAC: "IaC Scan",
}

# Remediation advice per rule name.
_RECOMMENDATIONS: dict[str, str] = {
    "tests_failed": "Fix failing unit/integration tests before redeploying.",
    "coverage_below_minimum": "Add tests to raise coverage above the configured minimum.",
    "lint_failed": "Resolve lint and static-analysis errors.",
    "code_quality_gate_failed": "Review blocker and critical issues in the code-quality report.",
    "critical_vulnerabilities": "Patch or remove components with critical vulnerabilities.",
    "high_vulnerabilities": "Remediate high-severity vulnerabilities or raise an exception.",
    "medium_vulnerabilities": "Schedule remediation of medium-severity vulnerabilities.",
}


def _verdict_label(result: GateResult) -> str:
    return _PASSED if result.passed else _BLOCKED


def _severity_label(violation: GateViolation) -> str:
    label = _BLOCKED if violation.blocking else _WARNING
    if violation.unknown:
        label += " (unknown input)"
    return label


def _escape(text: str) -> str:
    return text.replace("|", "\\|")


# ---------------------------------------------------------------------------
# Section builders
# ---------------------------------------------------------------------------


def _gate_section(result: GateResult) -> str:
    lines: list[str] = [
        f"### Security Gate -- {result.scope.value}",
        "",
        f"**Verdict:** {_verdict_label(result)}  ",
        f"**Score:** {result.score}/100 (threshold {result.pass_threshold})",
    ]
    primary = result.primary_block_reason
    if primary is not None:
        lines.append(f"**Primary block reason:** `{primary.rule}` -- {_escape(primary.message)}")

    if result.violations:
        lines.extend(
            [
                "",
                "| Rule | Deduction | Severity | Details |",
                "|---|---:|---|---|",
            ]
        )
        for violation in result.violations:
            lines.append(
                f"| `{violation.rule}` | -{violation.deduction} | "
                f"{_severity_label(violation)} | {_escape(violation.message)} |"
            )
    else:
        lines.extend(["", "No violations."])
    return "\n".join(lines)


def _scan_section(scan: NormalizedScanResult) -> str:
    lines: list[str] = [
        "### Scan Results",
        "",
        "| Tool | Metric | Value |",
        "|---|---|---|",
    ]
    for tool in ScanTool:
        if not scan.is_enabled(tool):
            continue
        reported = [(m, scan.value(tool, m)) for m in ScanMetric if scan.value(tool, m) is not None]
        if not reported:
            lines.append(f"| {_TOOL_DISPLAY[tool]} | -- | unknown |")
            continue
        for metric, value in reported:
            suffix = "%" if metric == ScanMetric.COVERAGE else ""
            lines.append(f"| {_TOOL_DISPLAY[tool]} | {metric.value} | {value}{suffix} |")
    if scan.unavailable_tools:
        lines.extend(
            [
                "",
                "Unavailable: " + ", ".join(_TOOL_DISPLAY[t] for t in scan.unavailable_tools),
            ]
        )
    return "\n".join(lines)


def _recommendations_section(results: Iterable[GateResult]) -> str:
    seen: list[str] = []
    for result in results:
        for violation in result.violations:
            if violation.rule not in seen:
                seen.append(violation.rule)
    lines = ["### Recommendations", ""]
    if not seen:
        lines.append("All security gate checks passed. No action required.")
        return "\n".join(lines)
    for rule in seen:
        advice = _RECOMMENDATIONS.get(rule, "Review the violation details.")
        lines.append(f"- **{rule}:** {advice}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def generate_gate_report(
    results: Iterable[GateResult],
    scan: NormalizedScanResult | None = None,
) -> str:
    """Generate a Markdown report for one or more gate results.

    Args:
        results: Gate results, one per evaluated scope.
        scan: The normalized scan the results were computed from.

    Returns:
        A complete Markdown report string.
    """
    results = list(results)
    logger.debug("Generating gate report for %d scope(s)", len(results))

    sections: list[str] = ["## Security Gate Report"]
    sections.extend(_gate_section(result) for result in results)
    if scan is not None:
        sections.append(_scan_section(scan))
    sections.append(_recommendations_section(results))
    return "\n\n".join(sections)


def generate_run_summary(record: DeploymentRecord) -> str:
    """Generate a Markdown summary of a deployment run.

    Includes the outcome, per-environment table, risk assessment and the
    gate report for every evaluated scope.
    """
    state_label = _STATE_DISPLAY.get(record.state, record.state.upper())
    request = record.request
    lines: list[str] = [
        "## Deployment Summary",
        "",
        f"**Run:** `{record.run_id}`  ",
        f"**Ref:** {request.ref_kind.value} `{request.ref}`  ",
        f"**Actor:** {request.actor or '-'}  ",
        f"**Status:** {state_label}",
    ]
    if record.rollback_of:
        lines.append(f"**Rollback of:** `{record.rollback_of}`")
    if record.error_kind is not None:
        lines.append(f"**Error:** `{record.error_kind.value}` -- {_escape(record.message)}")
    elif record.message:
        lines.append(f"**Note:** {_escape(record.message)}")

    if record.environments:
        lines.extend(
            [
                "",
                "| Environment | Version | Status | URL |",
                "|---|---|---|---|",
            ]
        )
        for key, outcome in record.environments.items():
            lines.append(
                f"| {ENVIRONMENT_DISPLAY_NAMES.get(key, key)} | `{outcome.version}` | "
                f"{outcome.status.value} | {outcome.url or _escape(outcome.error) or '-'} |"
            )

    risk = record.risk_assessment
    if risk is not None:
        lines.extend(
            [
                "",
                f"**Risk:** {risk.release_type.value} release, {risk.risk_level.value} risk "
                f"(previous {risk.previous_version or 'none'}, "
                f"approval {'required' if risk.approval_required else 'not required'})",
            ]
        )
    if record.approval is not None:
        verdict = "approved" if record.approval.approved else "denied"
        lines.append(f"**Approval:** {verdict} by {record.approval.approver or 'unknown'}")

    sections = ["\n".join(lines)]
    if record.gate_results:
        sections.extend(_gate_section(result) for result in record.gate_results.values())
    return "\n\n".join(sections)
