"""Parsers that turn scanner report files into scan findings.

Supported formats:

* SonarCloud ``api/measures/component`` JSON (optionally with the
  ``api/qualitygates/project_status`` payload merged in under
  ``projectStatus``).
* SARIF 2.1.0 as produced by Checkmarx and most SAST/SCA/IaC tools.
  Result levels map to severities: ``error`` to critical, ``warning`` to
  high and ``note`` to medium.
* A plain JSON object of ``{metric: value}`` pairs for anything else.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.release_shared.models import ScanFinding, ScanMetric, ScanTool

logger = logging.getLogger(__name__)

_SONAR_METRICS: dict[str, ScanMetric] = {
    "coverage": ScanMetric.COVERAGE,
    "blocker_violations": ScanMetric.BLOCKER_COUNT,
    "critical_violations": ScanMetric.CRITICAL_COUNT,
}

_SARIF_LEVELS: dict[str, ScanMetric] = {
    "error": ScanMetric.CRITICAL_COUNT,
    "warning": ScanMetric.HIGH_COUNT,
    "note": ScanMetric.MEDIUM_COUNT,
}


class ReportParseError(ValueError):
    """Raised when a report file cannot be interpreted."""


def _file_timestamp(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


def parse_sonar_measures(
    data: dict[str, Any],
    collected_at: datetime | None = None,
) -> list[ScanFinding]:
    """Convert a SonarCloud measures payload into code-quality findings."""
    collected_at = collected_at or datetime.now(timezone.utc)
    component = data.get("component")
    if not isinstance(component, dict):
        raise ReportParseError("Sonar report has no 'component' object")

    findings: list[ScanFinding] = []
    for measure in component.get("measures", []) or []:
        metric = _SONAR_METRICS.get(measure.get("metric", ""))
        if metric is None or "value" not in measure:
            continue
        findings.append(
            ScanFinding(
                tool=ScanTool.CODE_QUALITY,
                metric=metric,
                value=measure["value"],
                collected_at=collected_at,
            )
        )

    status = (data.get("projectStatus") or {}).get("status")
    if status:
        findings.append(
            ScanFinding(
                tool=ScanTool.CODE_QUALITY,
                metric=ScanMetric.QUALITY_GATE_STATUS,
                value=status,
                collected_at=collected_at,
            )
        )
    return findings


def parse_sarif(
    data: dict[str, Any],
    tool: ScanTool,
    collected_at: datetime | None = None,
) -> list[ScanFinding]:
    """Count SARIF results by level and emit one finding per severity.

    Every severity is reported, including zero counts, so that a clean
    report is distinguishable from a missing one.
    """
    collected_at = collected_at or datetime.now(timezone.utc)
    runs = data.get("runs")
    if not isinstance(runs, list):
        raise ReportParseError("SARIF report has no 'runs' array")

    counts = {metric: 0 for metric in _SARIF_LEVELS.values()}
    for run in runs:
        for result in run.get("results", []) or []:
            # SARIF defaults a missing level to "warning"
            metric = _SARIF_LEVELS.get(result.get("level", "warning"))
            if metric is not None:
                counts[metric] += 1

    return [
        ScanFinding(tool=tool, metric=metric, value=count, collected_at=collected_at)
        for metric, count in counts.items()
    ]


def parse_metric_map(
    data: dict[str, Any],
    tool: ScanTool,
    collected_at: datetime | None = None,
) -> list[ScanFinding]:
    """Convert ``{"coverage": 81, "high_count": 0, ...}`` into findings."""
    collected_at = collected_at or datetime.now(timezone.utc)
    findings: list[ScanFinding] = []
    for key, value in data.items():
        try:
            metric = ScanMetric(key)
        except ValueError:
            logger.debug("Ignoring unknown metric '%s' for %s", key, tool.value)
            continue
        findings.append(
            ScanFinding(tool=tool, metric=metric, value=value, collected_at=collected_at)
        )
    return findings


def parse_report_file(path: Path | str, tool: ScanTool) -> list[ScanFinding]:
    """Detect the format of *path* and parse it for *tool*.

    Raises:
        ReportParseError: If the file is missing, is not JSON, or matches
            no supported format.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ReportParseError(f"Report file not found: {path}") from exc
    except (json.JSONDecodeError, OSError) as exc:
        raise ReportParseError(f"Unreadable report file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ReportParseError(f"Report file {path} does not contain a JSON object")

    collected_at = _file_timestamp(path)
    if "runs" in data:
        return parse_sarif(data, tool, collected_at)
    if "component" in data:
        return parse_sonar_measures(data, collected_at)
    return parse_metric_map(data, tool, collected_at)
