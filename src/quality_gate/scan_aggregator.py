"""Scan aggregator for the security gate.

Normalizes raw scan findings from every tool into a single
:class:`NormalizedScanResult`, resolving duplicates and unit differences.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable

from src.release_shared.models import (
    STATUS_METRICS,
    BuildResult,
    NormalizedScanResult,
    ScanFinding,
    ScanMetric,
    ScanStatus,
    ScanTool,
)

logger = logging.getLogger(__name__)

_PASSED_TOKENS = frozenset({"ok", "pass", "passed", "success", "true", "1"})
_FAILED_TOKENS = frozenset({"error", "fail", "failed", "failure", "false", "0", "warn"})


class ScanResultAggregator:
    """Aggregates scan findings into a normalized result.

    Duplicate ``(tool, metric)`` findings resolve to the most recently
    collected value; findings with equal timestamps keep input order so
    the later one wins.  Values that cannot be normalized are dropped and
    therefore read as unknown downstream.
    """

    def aggregate(
        self,
        findings: Iterable[ScanFinding],
        enabled_tools: Iterable[ScanTool] | None = None,
        unavailable_tools: Iterable[ScanTool] = (),
    ) -> NormalizedScanResult:
        """Produce a single NormalizedScanResult from raw findings.

        Args:
            findings: Raw findings from all tools, in arrival order.
            enabled_tools: Tools expected to report.  Defaults to every
                tool that produced at least one finding.
            unavailable_tools: Tools that timed out or errored.

        Returns:
            The normalized result.
        """
        ordered = sorted(
            enumerate(findings), key=lambda item: (item[1].collected_at, item[0])
        )

        values: dict[tuple[ScanTool, ScanMetric], int | str] = {}
        seen_tools: set[ScanTool] = set()
        for _, finding in ordered:
            seen_tools.add(finding.tool)
            normalized = self._normalize(finding)
            if normalized is None:
                logger.warning(
                    "Dropping unparseable %s.%s value %r",
                    finding.tool.value,
                    finding.metric.value,
                    finding.value,
                )
                values.pop((finding.tool, finding.metric), None)
                continue
            values[(finding.tool, finding.metric)] = normalized

        enabled = frozenset(enabled_tools) if enabled_tools is not None else frozenset(seen_tools)
        unavailable = tuple(unavailable_tools)

        missing = sorted(t.value for t in enabled if t not in seen_tools)
        if missing:
            logger.warning("No scan findings reported for enabled tools: %s", ", ".join(missing))

        return NormalizedScanResult(
            values=values,
            enabled_tools=enabled,
            unavailable_tools=unavailable,
        )

    @staticmethod
    def from_build(build_result: BuildResult) -> list[ScanFinding]:
        """Convert a build outcome into ``build`` tool findings.

        Test and lint status are only reported when the build collaborator
        knows them; an unknown status stays absent.
        """
        findings: list[ScanFinding] = []
        if build_result.tests_passed is not None:
            findings.append(
                ScanFinding(
                    tool=ScanTool.BUILD,
                    metric=ScanMetric.TEST_STATUS,
                    value=ScanStatus.PASSED.value if build_result.tests_passed else ScanStatus.FAILED.value,
                )
            )
        if build_result.lint_passed is not None:
            findings.append(
                ScanFinding(
                    tool=ScanTool.BUILD,
                    metric=ScanMetric.LINT_STATUS,
                    value=ScanStatus.PASSED.value if build_result.lint_passed else ScanStatus.FAILED.value,
                )
            )
        return findings

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _normalize(self, finding: ScanFinding) -> int | str | None:
        if finding.metric in STATUS_METRICS:
            return self._normalize_status(finding.value)
        if finding.metric == ScanMetric.COVERAGE:
            return self._normalize_coverage(finding.value)
        return self._normalize_count(finding.value)

    @staticmethod
    def _normalize_status(value: object) -> str | None:
        if isinstance(value, bool):
            return ScanStatus.PASSED.value if value else ScanStatus.FAILED.value
        token = str(value).strip().lower()
        if token in _PASSED_TOKENS:
            return ScanStatus.PASSED.value
        if token in _FAILED_TOKENS:
            return ScanStatus.FAILED.value
        return None

    @staticmethod
    def _normalize_coverage(value: object) -> int | None:
        """Convert a percentage (``87.5``, ``"87.5%"``) to an int in [0, 100]."""
        if isinstance(value, bool):
            return None
        try:
            number = float(str(value).strip().rstrip("%"))
        except ValueError:
            return None
        if math.isnan(number):
            return None
        return int(max(0.0, min(100.0, number)))

    @staticmethod
    def _normalize_count(value: object) -> int | None:
        if isinstance(value, bool):
            return None
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
        if math.isnan(number) or number < 0 or not number.is_integer():
            return None
        return int(number)
