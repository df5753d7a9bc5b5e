"""Security Gate Engine -- scores normalized scan results against thresholds.

Evaluates an ordered rule table.  Every violated rule deducts points from
a starting score of 100; a rule may also block deployment depending on
the scope being gated:

    tests_failed              -- 20 points, blocks every scope
    coverage_below_minimum    -- 15 points, blocks production
    lint_failed               -- 10 points, blocks every scope
    code_quality_gate_failed  -- 25 points, blocks production
    critical_vulnerabilities  -- 30 per finding over the limit, blocks every scope
    high_vulnerabilities      -- 20 per finding over the limit, blocks production
    medium_vulnerabilities    -- 10 per finding over the limit, advisory

A rule whose input is unknown (tool enabled but metric missing) is treated
as violated by one unit and blocks regardless of scope.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from src.release_shared.models import (
    GateResult,
    GateThresholds,
    GateViolation,
    NormalizedScanResult,
    ScanMetric,
    ScanStatus,
    ScanTool,
    Scope,
)

logger = logging.getLogger(__name__)

_BOTH = frozenset({Scope.PRODUCTION, Scope.NON_PRODUCTION})
_PROD_ONLY = frozenset({Scope.PRODUCTION})
_NEVER: frozenset[Scope] = frozenset()


@dataclass(frozen=True)
class _Check:
    """Outcome of a single rule check.

    ``units`` is the multiplier applied to the base deduction; zero means
    the rule passed.
    """
    units: int
    message: str = ""
    unknown: bool = False


_PASS = _Check(units=0)


@dataclass(frozen=True)
class GateRule:
    """One row of the gate rule table."""
    name: str
    deduction: int
    blocking_scopes: frozenset[Scope]
    check: Callable[[NormalizedScanResult, GateThresholds], _Check]


# ---------------------------------------------------------------------------
# Rule checks
# ---------------------------------------------------------------------------


def _status_check(metric: ScanMetric, label: str) -> Callable[[NormalizedScanResult, GateThresholds], _Check]:
    def check(scan: NormalizedScanResult, thresholds: GateThresholds) -> _Check:
        if not scan.is_enabled(ScanTool.BUILD):
            return _PASS
        status = scan.value(ScanTool.BUILD, metric)
        if status is None:
            return _Check(units=1, message=f"{label} status unknown", unknown=True)
        if status == ScanStatus.FAILED.value:
            return _Check(units=1, message=f"{label} failed")
        return _PASS

    return check


def _check_coverage(scan: NormalizedScanResult, thresholds: GateThresholds) -> _Check:
    if not scan.is_enabled(ScanTool.CODE_QUALITY):
        return _PASS
    coverage = scan.value(ScanTool.CODE_QUALITY, ScanMetric.COVERAGE)
    if coverage is None:
        return _Check(units=1, message="Code coverage unknown", unknown=True)
    if int(coverage) < thresholds.min_coverage:
        return _Check(
            units=1,
            message=f"Code coverage {coverage}% is below minimum {thresholds.min_coverage}%",
        )
    return _PASS


def _check_code_quality(scan: NormalizedScanResult, thresholds: GateThresholds) -> _Check:
    if not scan.is_enabled(ScanTool.CODE_QUALITY):
        return _PASS
    status = scan.value(ScanTool.CODE_QUALITY, ScanMetric.QUALITY_GATE_STATUS)
    blockers = scan.value(ScanTool.CODE_QUALITY, ScanMetric.BLOCKER_COUNT)
    critical = scan.value(ScanTool.CODE_QUALITY, ScanMetric.CRITICAL_COUNT)

    reasons: list[str] = []
    if status == ScanStatus.FAILED.value:
        reasons.append("quality gate status is failed")
    if blockers is not None and int(blockers) > thresholds.max_blocker:
        reasons.append(f"{blockers} blocker issues (max {thresholds.max_blocker})")
    if critical is not None and int(critical) > thresholds.max_critical_issues:
        reasons.append(f"{critical} critical issues (max {thresholds.max_critical_issues})")
    if reasons:
        return _Check(units=1, message="Code quality gate failed: " + "; ".join(reasons))

    missing = [
        metric.value
        for metric, value in (
            (ScanMetric.QUALITY_GATE_STATUS, status),
            (ScanMetric.BLOCKER_COUNT, blockers),
            (ScanMetric.CRITICAL_COUNT, critical),
        )
        if value is None
    ]
    if missing:
        return _Check(
            units=1,
            message="Code quality metrics unknown: " + ", ".join(missing),
            unknown=True,
        )
    return _PASS


def _vulnerability_check(
    metric: ScanMetric, limit_attr: str, label: str
) -> Callable[[NormalizedScanResult, GateThresholds], _Check]:
    def check(scan: NormalizedScanResult, thresholds: GateThresholds) -> _Check:
        total = scan.vulnerability_total(metric)
        limit = getattr(thresholds, limit_attr)
        if total is None:
            return _Check(units=1, message=f"{label} vulnerability count unknown", unknown=True)
        if total > limit:
            return _Check(
                units=total - limit,
                message=f"{total} {label} vulnerabilities found (max {limit})",
            )
        return _PASS

    return check


GATE_RULES: tuple[GateRule, ...] = (
    GateRule("tests_failed", 20, _BOTH, _status_check(ScanMetric.TEST_STATUS, "Tests")),
    GateRule("coverage_below_minimum", 15, _PROD_ONLY, _check_coverage),
    GateRule("lint_failed", 10, _BOTH, _status_check(ScanMetric.LINT_STATUS, "Lint")),
    GateRule("code_quality_gate_failed", 25, _PROD_ONLY, _check_code_quality),
    GateRule(
        "critical_vulnerabilities",
        30,
        _BOTH,
        _vulnerability_check(ScanMetric.CRITICAL_COUNT, "max_critical", "critical"),
    ),
    GateRule(
        "high_vulnerabilities",
        20,
        _PROD_ONLY,
        _vulnerability_check(ScanMetric.HIGH_COUNT, "max_high", "high"),
    ),
    GateRule(
        "medium_vulnerabilities",
        10,
        _NEVER,
        _vulnerability_check(ScanMetric.MEDIUM_COUNT, "max_medium", "medium"),
    ),
)


class SecurityGateEvaluator:
    """Scores a :class:`NormalizedScanResult` for one scope.

    Usage
    -----
    ::

        evaluator = SecurityGateEvaluator()
        result = evaluator.evaluate(scan, thresholds, Scope.PRODUCTION)
        if not result.passed:
            print(result.primary_block_reason.message)
    """

    def __init__(self, rules: tuple[GateRule, ...] = GATE_RULES) -> None:
        self._rules = rules

    def evaluate(
        self,
        scan: NormalizedScanResult,
        thresholds: GateThresholds,
        scope: Scope,
    ) -> GateResult:
        """Evaluate every rule in table order.

        Args:
            scan: Normalized scan result.
            thresholds: Limits to apply.
            scope: Scope being gated; decides which rules block.

        Returns:
            The gate result with violations in rule-table order.
        """
        violations: list[GateViolation] = []
        for rule in self._rules:
            outcome = rule.check(scan, thresholds)
            if outcome.units <= 0:
                continue
            violation = GateViolation(
                rule=rule.name,
                deduction=rule.deduction * outcome.units,
                blocking=outcome.unknown or scope in rule.blocking_scopes,
                message=outcome.message,
                unknown=outcome.unknown,
            )
            violations.append(violation)
            if not violation.blocking:
                logger.warning(
                    "Security gate warning (%s): %s", scope.value, violation.message
                )

        score = max(0, 100 - sum(v.deduction for v in violations))
        has_blocking = any(v.blocking for v in violations)
        passed = score >= thresholds.pass_threshold and not has_blocking

        logger.info(
            "Security gate (%s): score=%d, threshold=%d, violations=%d, passed=%s",
            scope.value,
            score,
            thresholds.pass_threshold,
            len(violations),
            passed,
        )
        return GateResult(
            scope=scope,
            score=score,
            passed=passed,
            violations=tuple(violations),
            pass_threshold=thresholds.pass_threshold,
        )

    @staticmethod
    def classify(result: GateResult) -> dict[str, list[GateViolation]]:
        """Group violations into ``blocking`` and ``warnings`` for display."""
        return {
            "blocking": result.blocking_violations,
            "warnings": result.warnings,
        }
