"""Shared data models for the release orchestrator."""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from src.release_orchestrator.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    RecordSealedError,
)
from src.release_shared.constants import (
    DEFAULT_PASS_THRESHOLD,
    ENVIRONMENT_DISPLAY_NAMES,
    ENVIRONMENT_PREFIXES,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Environment(str, Enum):
    """Deployment environments, declared in fixed deployment order."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRE_PRODUCTION = "pre-production"
    PRODUCTION = "production"

    @property
    def prefix(self) -> str:
        """Prefix used for SHA/timestamp version identifiers."""
        return ENVIRONMENT_PREFIXES[self.value]

    @property
    def display_name(self) -> str:
        return ENVIRONMENT_DISPLAY_NAMES[self.value]

    @property
    def scope(self) -> Scope:
        if self in (Environment.PRE_PRODUCTION, Environment.PRODUCTION):
            return Scope.PRODUCTION
        return Scope.NON_PRODUCTION

    @property
    def order(self) -> int:
        return list(Environment).index(self)

    @property
    def uses_semantic_version(self) -> bool:
        return self.scope == Scope.PRODUCTION


class Scope(str, Enum):
    """Strictness with which gate rules are applied."""
    PRODUCTION = "production"
    NON_PRODUCTION = "non-production"


class RefKind(str, Enum):
    """Kind of git ref that triggered a run."""
    BRANCH = "branch"
    TAG = "tag"


class TriggerSource(str, Enum):
    """How a deployment request was delivered."""
    PUSH = "push"
    MANUAL = "manual"
    SCHEDULE = "schedule"


class VersionScheme(str, Enum):
    """Version identifier schemes."""
    SHA_TIMESTAMP = "sha_timestamp"
    SEMANTIC = "semantic"
    SEMANTIC_PRERELEASE = "semantic_prerelease"


class ScanTool(str, Enum):
    """Scan tools whose results feed the security gate."""
    BUILD = "build"
    CODE_QUALITY = "code_quality"
    SAST = "sast"
    SCA = "sca"
    IAC = "iac"


VULNERABILITY_TOOLS: tuple[ScanTool, ...] = (ScanTool.SAST, ScanTool.SCA, ScanTool.IAC)


class ScanMetric(str, Enum):
    """Normalized metrics reported by scan tools."""
    COVERAGE = "coverage"
    CRITICAL_COUNT = "critical_count"
    HIGH_COUNT = "high_count"
    MEDIUM_COUNT = "medium_count"
    BLOCKER_COUNT = "blocker_count"
    QUALITY_GATE_STATUS = "quality_gate_status"
    TEST_STATUS = "test_status"
    LINT_STATUS = "lint_status"


STATUS_METRICS = frozenset(
    {ScanMetric.QUALITY_GATE_STATUS, ScanMetric.TEST_STATUS, ScanMetric.LINT_STATUS}
)


class ScanStatus(str, Enum):
    """Pass/fail value carried by status metrics."""
    PASSED = "passed"
    FAILED = "failed"


class ReleaseType(str, Enum):
    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"
    HOTFIX = "hotfix"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EnvironmentStatus(str, Enum):
    """Outcome of one environment within a run."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class ErrorKind(str, Enum):
    """Error taxonomy recorded on deployment records."""
    INVALID_VERSION_FORMAT = "invalid_version_format"
    INVALID_REQUEST = "invalid_request"
    BUILD_FAILED = "build_failed"
    SCAN_UNAVAILABLE = "scan_unavailable"
    GATE_BLOCKED = "gate_blocked"
    DEPLOY_FAILED = "deploy_failed"
    APPROVAL_DENIED = "approval_denied"
    ROLLBACK_TARGET_INVALID = "rollback_target_invalid"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


@functools.total_ordering
@dataclass(frozen=True)
class SemanticVersion:
    """A ``vMAJOR.MINOR.PATCH(-PRERELEASE)?`` version."""
    major: int
    minor: int
    patch: int
    prerelease: str | None = None

    @property
    def base(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @property
    def is_prerelease(self) -> bool:
        return self.prerelease is not None

    def bump_patch(self) -> SemanticVersion:
        return SemanticVersion(self.major, self.minor, self.patch + 1)

    def _sort_key(self) -> tuple:
        # A stable release sorts after any prerelease of the same base.
        if self.prerelease is None:
            return (self.base, 1, ())
        parts = tuple(
            (0, int(p), "") if p.isdigit() else (1, 0, p)
            for p in self.prerelease.split(".")
        )
        return (self.base, 0, parts)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __str__(self) -> str:
        text = f"v{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "major": self.major,
            "minor": self.minor,
            "patch": self.patch,
            "prerelease": self.prerelease,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SemanticVersion:
        return cls(
            major=int(data["major"]),
            minor=int(data["minor"]),
            patch=int(data["patch"]),
            prerelease=data.get("prerelease"),
        )


@dataclass(frozen=True)
class ResolvedVersion:
    """Version identifier chosen for one environment."""
    environment: Environment
    raw: str
    scheme: VersionScheme
    semantic: SemanticVersion | None = None
    tag_to_create: str | None = None

    @property
    def is_semantic(self) -> bool:
        return self.semantic is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment.value,
            "raw": self.raw,
            "scheme": self.scheme.value,
            "semantic": self.semantic.to_dict() if self.semantic else None,
            "tag_to_create": self.tag_to_create,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolvedVersion:
        semantic = data.get("semantic")
        return cls(
            environment=Environment(data["environment"]),
            raw=data["raw"],
            scheme=VersionScheme(data["scheme"]),
            semantic=SemanticVersion.from_dict(semantic) if semantic else None,
            tag_to_create=data.get("tag_to_create"),
        )


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeploymentRequest:
    """Inputs for one orchestration run."""
    ref: str
    ref_kind: RefKind
    actor: str
    environment_override: Environment | None = None
    force_version: str | None = None
    emergency: bool = False
    trigger: TriggerSource = TriggerSource.PUSH
    sha: str | None = None
    reason: str = ""

    def __post_init__(self) -> None:
        if not self.ref:
            raise InvalidRequestError("Deployment request requires a ref")
        if self.environment_override is not None and self.trigger != TriggerSource.MANUAL:
            raise InvalidRequestError(
                "environment_override is only allowed for manual triggers"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref": self.ref,
            "ref_kind": self.ref_kind.value,
            "actor": self.actor,
            "environment_override": (
                self.environment_override.value if self.environment_override else None
            ),
            "force_version": self.force_version,
            "emergency": self.emergency,
            "trigger": self.trigger.value,
            "sha": self.sha,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentRequest:
        override = data.get("environment_override")
        return cls(
            ref=data["ref"],
            ref_kind=RefKind(data["ref_kind"]),
            actor=data.get("actor", ""),
            environment_override=Environment(override) if override else None,
            force_version=data.get("force_version"),
            emergency=bool(data.get("emergency", False)),
            trigger=TriggerSource(data.get("trigger", TriggerSource.PUSH.value)),
            sha=data.get("sha"),
            reason=data.get("reason", ""),
        )


@dataclass(frozen=True)
class RollbackRequest:
    """Explicit request to redeploy a historical version to one environment.

    ``target_run_id`` references a prior deployment record; when omitted,
    ``target_version`` is looked up in the history, and when both are
    omitted the previous successful deployment of the environment is used.
    """
    environment: Environment
    actor: str
    reason: str
    target_run_id: str | None = None
    target_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment.value,
            "actor": self.actor,
            "reason": self.reason,
            "target_run_id": self.target_run_id,
            "target_version": self.target_version,
        }


# ---------------------------------------------------------------------------
# Scanning and gating
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GateThresholds:
    """Limits applied by the security gate.

    Instances are immutable and validated on construction so a run can
    capture them once and never observe a change.
    """
    min_coverage: int = 75
    max_critical: int = 0
    max_high: int = 5
    max_medium: int = 10
    max_blocker: int = 0
    max_critical_issues: int = 0
    pass_threshold: int = DEFAULT_PASS_THRESHOLD

    def __post_init__(self) -> None:
        for name in ("min_coverage", "pass_threshold"):
            value = getattr(self, name)
            if not isinstance(value, int) or not 0 <= value <= 100:
                raise ConfigurationError(f"{name} must be an integer in [0, 100], got {value!r}")
        for name in (
            "max_critical",
            "max_high",
            "max_medium",
            "max_blocker",
            "max_critical_issues",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ConfigurationError(f"{name} must be a non-negative integer, got {value!r}")

    def to_dict(self) -> dict[str, int]:
        return {
            "min_coverage": self.min_coverage,
            "max_critical": self.max_critical,
            "max_high": self.max_high,
            "max_medium": self.max_medium,
            "max_blocker": self.max_blocker,
            "max_critical_issues": self.max_critical_issues,
            "pass_threshold": self.pass_threshold,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateThresholds:
        known = {k: data[k] for k in cls().to_dict() if k in data}
        return cls(**known)


@dataclass(frozen=True)
class ScanFinding:
    """A single normalized metric from one tool."""
    tool: ScanTool
    metric: ScanMetric
    value: int | str
    collected_at: datetime = field(default_factory=_utcnow)


@dataclass
class NormalizedScanResult:
    """Scan metrics keyed by ``(tool, metric)`` after aggregation."""
    values: dict[tuple[ScanTool, ScanMetric], int | str] = field(default_factory=dict)
    enabled_tools: frozenset[ScanTool] = frozenset()
    unavailable_tools: tuple[ScanTool, ...] = ()

    def is_enabled(self, tool: ScanTool) -> bool:
        return tool in self.enabled_tools

    def value(self, tool: ScanTool, metric: ScanMetric) -> int | str | None:
        """Return the metric value, or ``None`` when unknown."""
        return self.values.get((tool, metric))

    def vulnerability_total(self, metric: ScanMetric) -> int | None:
        """Sum *metric* across enabled vulnerability tools.

        Returns ``None`` when any enabled vulnerability tool did not
        report the metric.
        """
        total = 0
        for tool in VULNERABILITY_TOOLS:
            if tool not in self.enabled_tools:
                continue
            value = self.values.get((tool, metric))
            if value is None:
                return None
            total += int(value)
        return total

    def to_dict(self) -> dict[str, Any]:
        return {
            "values": {
                f"{tool.value}.{metric.value}": value
                for (tool, metric), value in self.values.items()
            },
            "enabled_tools": sorted(t.value for t in self.enabled_tools),
            "unavailable_tools": [t.value for t in self.unavailable_tools],
        }


@dataclass(frozen=True)
class GateViolation:
    """One violated gate rule."""
    rule: str
    deduction: int
    blocking: bool
    message: str = ""
    unknown: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "deduction": self.deduction,
            "blocking": self.blocking,
            "message": self.message,
            "unknown": self.unknown,
        }


@dataclass(frozen=True)
class GateResult:
    """Outcome of the security gate for one scope."""
    scope: Scope
    score: int
    passed: bool
    violations: tuple[GateViolation, ...] = ()
    pass_threshold: int = 50

    @property
    def blocking_violations(self) -> list[GateViolation]:
        return [v for v in self.violations if v.blocking]

    @property
    def warnings(self) -> list[GateViolation]:
        return [v for v in self.violations if not v.blocking]

    @property
    def primary_block_reason(self) -> GateViolation | None:
        """First blocking violation in rule-table order."""
        for violation in self.violations:
            if violation.blocking:
                return violation
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.value,
            "score": self.score,
            "passed": self.passed,
            "pass_threshold": self.pass_threshold,
            "violations": [v.to_dict() for v in self.violations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateResult:
        return cls(
            scope=Scope(data["scope"]),
            score=int(data["score"]),
            passed=bool(data["passed"]),
            pass_threshold=int(data.get("pass_threshold", 50)),
            violations=tuple(
                GateViolation(**v) for v in data.get("violations", [])
            ),
        )


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskAssessment:
    """Risk classification of a production release."""
    release_type: ReleaseType
    risk_level: RiskLevel
    approval_required: bool
    resolved_version: str
    previous_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "release_type": self.release_type.value,
            "risk_level": self.risk_level.value,
            "approval_required": self.approval_required,
            "resolved_version": self.resolved_version,
            "previous_version": self.previous_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RiskAssessment:
        return cls(
            release_type=ReleaseType(data["release_type"]),
            risk_level=RiskLevel(data["risk_level"]),
            approval_required=bool(data["approval_required"]),
            resolved_version=data["resolved_version"],
            previous_version=data.get("previous_version"),
        )


# ---------------------------------------------------------------------------
# Collaborator results
# ---------------------------------------------------------------------------


@dataclass
class BuildResult:
    """Result reported by the build collaborator."""
    success: bool = False
    artifact_location: str = ""
    tests_passed: bool | None = None
    lint_passed: bool | None = None
    error: str = ""


@dataclass
class DeployResult:
    """Result reported by the deploy collaborator for one environment."""
    success: bool = False
    deployed_url: str | None = None
    error: str | None = None


@dataclass
class ApprovalDecision:
    """Approve/deny signal from the approval collaborator."""
    approved: bool
    approver: str = ""
    comment: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "approver": self.approver,
            "comment": self.comment,
        }


@dataclass
class HealthCheckResult:
    """Result of checking a deployed URL after deployment."""
    healthy: bool
    url: str = ""
    status_code: int | None = None
    attempts: int = 0
    error: str = ""


@dataclass
class EnvironmentOutcome:
    """Per-environment outcome within a deployment record.

    Frozen together with its record: after :meth:`freeze` any attribute
    assignment raises :class:`RecordSealedError`.
    """
    environment: Environment
    version: str = ""
    status: EnvironmentStatus = EnvironmentStatus.PENDING
    url: str = ""
    error: str = ""
    started_at: str = ""
    finished_at: str = ""

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_frozen", False):
            raise RecordSealedError()
        super().__setattr__(name, value)

    def freeze(self) -> None:
        object.__setattr__(self, "_frozen", True)

    @property
    def frozen(self) -> bool:
        return self.__dict__.get("_frozen", False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment.value,
            "version": self.version,
            "status": self.status.value,
            "url": self.url,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnvironmentOutcome:
        return cls(
            environment=Environment(data["environment"]),
            version=data.get("version", ""),
            status=EnvironmentStatus(data.get("status", "pending")),
            url=data.get("url", ""),
            error=data.get("error", ""),
            started_at=data.get("started_at", ""),
            finished_at=data.get("finished_at", ""),
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeploymentEvent:
    """Structured event describing a deployment record transition."""
    run_id: str
    state: str
    environment: str | None = None
    version: str | None = None
    outcome: str | None = None
    gate_score: int | None = None
    risk_level: str | None = None
    message: str = ""
    timestamp: str = field(default_factory=lambda: _utcnow().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state,
            "environment": self.environment,
            "version": self.version,
            "outcome": self.outcome,
            "gate_score": self.gate_score,
            "risk_level": self.risk_level,
            "message": self.message,
            "timestamp": self.timestamp,
        }
