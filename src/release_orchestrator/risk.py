"""Release risk assessment for Production-bound semantic versions."""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Mapping, Sequence

from src.release_shared.models import (
    ReleaseType,
    RiskAssessment,
    RiskLevel,
    SemanticVersion,
)

logger = logging.getLogger(__name__)

DEFAULT_RISK_MAPPING: dict[ReleaseType, RiskLevel] = {
    ReleaseType.PATCH: RiskLevel.MEDIUM,
    ReleaseType.MINOR: RiskLevel.HIGH,
    ReleaseType.MAJOR: RiskLevel.CRITICAL,
    ReleaseType.HOTFIX: RiskLevel.HIGH,
}

DEFAULT_APPROVAL_LEVELS: frozenset[RiskLevel] = frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL})

DEFAULT_HOTFIX_PATTERNS: tuple[str, ...] = ("hotfix/*", "v*-hotfix.*")


def classify_bump(
    resolved: SemanticVersion, previous: SemanticVersion | None
) -> ReleaseType:
    """Compare two versions by their ``(major, minor, patch)`` base.

    An equal base is a patch and a downgrade is treated as major.
    """
    if previous is None:
        return ReleaseType.MAJOR
    if resolved.base < previous.base:
        return ReleaseType.MAJOR
    if resolved.major != previous.major:
        return ReleaseType.MAJOR
    if resolved.minor != previous.minor:
        return ReleaseType.MINOR
    return ReleaseType.PATCH


class RiskAssessor:
    """Classifies a release and decides whether it needs approval."""

    def __init__(
        self,
        mapping: Mapping[ReleaseType, RiskLevel] | None = None,
        approval_levels: frozenset[RiskLevel] = DEFAULT_APPROVAL_LEVELS,
        hotfix_patterns: Sequence[str] = DEFAULT_HOTFIX_PATTERNS,
        emergency_bypass_approval: bool = True,
    ) -> None:
        self._mapping = {**DEFAULT_RISK_MAPPING, **(mapping or {})}
        self._approval_levels = frozenset(approval_levels)
        self._hotfix_patterns = tuple(hotfix_patterns)
        self._emergency_bypass = emergency_bypass_approval

    def is_hotfix(self, ref: str) -> bool:
        return any(fnmatch.fnmatchcase(ref, pattern) for pattern in self._hotfix_patterns)

    def approval_required(self, level: RiskLevel, emergency: bool = False) -> bool:
        if emergency and self._emergency_bypass:
            return False
        return level in self._approval_levels

    def assess(
        self,
        resolved_version: SemanticVersion,
        previous_version: SemanticVersion | None,
        ref: str = "",
        emergency: bool = False,
    ) -> RiskAssessment:
        """Assess *resolved_version* against the previous release.

        Args:
            resolved_version: Version about to be deployed.
            previous_version: Latest earlier release, or None for a first
                release.
            ref: Triggering ref, matched against hotfix patterns.
            emergency: Whether the request bypasses approval.

        Returns:
            The risk assessment.
        """
        # A hotfix ref or version wins over the numeric delta, first release included.
        if (ref and self.is_hotfix(ref)) or self.is_hotfix(str(resolved_version)):
            release_type = ReleaseType.HOTFIX
            level = self._mapping[release_type]
        elif previous_version is None:
            release_type = ReleaseType.MAJOR
            level = RiskLevel.CRITICAL
        else:
            release_type = classify_bump(resolved_version, previous_version)
            level = self._mapping[release_type]

        required = self.approval_required(level, emergency)
        logger.info(
            "Risk assessment: %s -> %s is %s/%s (approval %s)",
            previous_version or "none",
            resolved_version,
            release_type.value,
            level.value,
            "required" if required else "not required",
        )
        return RiskAssessment(
            release_type=release_type,
            risk_level=level,
            approval_required=required,
            resolved_version=str(resolved_version),
            previous_version=str(previous_version) if previous_version else None,
        )
