"""Configuration dataclasses and loader for the release orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.release_orchestrator.exceptions import ConfigurationError
from src.release_orchestrator.risk import (
    DEFAULT_APPROVAL_LEVELS,
    DEFAULT_HOTFIX_PATTERNS,
    DEFAULT_RISK_MAPPING,
)
from src.release_orchestrator.targets import TargetRule, rule_from_dict
from src.release_shared.constants import (
    DEFAULT_MAX_ROLLBACK_DEPTH,
    DEFAULT_PASS_THRESHOLD,
    DEFAULT_SCAN_TIMEOUT,
    EVENTS_FILE,
    STATE_DIR,
)
from src.release_shared.models import (
    GateThresholds,
    ReleaseType,
    RiskLevel,
    ScanTool,
)

# Threshold presets, from strictest to most lenient.
GATE_PRESETS: dict[str, dict[str, int]] = {
    "strict": {"min_coverage": 90, "max_critical": 0, "max_high": 0},
    "moderate": {"min_coverage": 80, "max_critical": 0, "max_high": 2},
    "minimal": {"min_coverage": 50, "max_critical": 5, "max_high": 10},
}


@dataclass
class GateConfig:
    """Security gate thresholds."""

    preset: str = ""
    min_coverage: int = 75
    max_critical: int = 0
    max_high: int = 5
    max_medium: int = 10
    max_blocker: int = 0
    max_critical_issues: int = 0
    pass_threshold: int = DEFAULT_PASS_THRESHOLD

    def thresholds(self) -> GateThresholds:
        """Build the immutable thresholds captured by each run."""
        return GateThresholds(
            min_coverage=self.min_coverage,
            max_critical=self.max_critical,
            max_high=self.max_high,
            max_medium=self.max_medium,
            max_blocker=self.max_blocker,
            max_critical_issues=self.max_critical_issues,
            pass_threshold=self.pass_threshold,
        )


@dataclass
class ScanConfig:
    """Configuration for the scanning phase."""

    enabled_tools: list[str] = field(
        default_factory=lambda: ["build", "code_quality", "sast", "sca", "iac"]
    )
    per_tool_timeout: int = DEFAULT_SCAN_TIMEOUT
    build_report: str = "reports/build.json"
    reports: dict[str, str] = field(
        default_factory=lambda: {
            "code_quality": "reports/sonar.json",
            "sast": "reports/sast.sarif",
            "sca": "reports/sca.sarif",
            "iac": "reports/iac.sarif",
        }
    )

    def tools(self) -> list[ScanTool]:
        try:
            return [ScanTool(name) for name in self.enabled_tools]
        except ValueError as exc:
            raise ConfigurationError(f"Unknown scan tool in enabled_tools: {exc}") from exc


@dataclass
class RiskConfig:
    """Configuration for release risk assessment."""

    mapping: dict[str, str] = field(
        default_factory=lambda: {k.value: v.value for k, v in DEFAULT_RISK_MAPPING.items()}
    )
    approval_levels: list[str] = field(
        default_factory=lambda: sorted(level.value for level in DEFAULT_APPROVAL_LEVELS)
    )
    hotfix_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_HOTFIX_PATTERNS))
    emergency_bypass_approval: bool = True

    def risk_mapping(self) -> dict[ReleaseType, RiskLevel]:
        try:
            return {ReleaseType(k): RiskLevel(v) for k, v in self.mapping.items()}
        except ValueError as exc:
            raise ConfigurationError(f"Invalid risk mapping: {exc}") from exc

    def risk_approval_levels(self) -> frozenset[RiskLevel]:
        try:
            return frozenset(RiskLevel(level) for level in self.approval_levels)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid approval level: {exc}") from exc


@dataclass
class TargetConfig:
    """Additional target-selection rules."""

    extra_rules: list[dict[str, Any]] = field(default_factory=list)

    def rules(self) -> list[TargetRule]:
        return [rule_from_dict(entry) for entry in self.extra_rules]


@dataclass
class DeployConfig:
    """Configuration for the deploying phase."""

    command: list[str] = field(default_factory=list)
    timeout: int = 900
    artifact_root: str = "artifacts"
    dry_run: bool = False
    health_check: bool = True
    health_timeout: float = 10.0
    health_retries: int = 3
    health_retry_delay: float = 5.0


@dataclass
class NotificationConfig:
    """Configuration for deployment event delivery."""

    log_events: bool = True
    events_file: str = ""
    webhook_url: str = ""
    webhook_timeout: float = 10.0


@dataclass
class RepositoryConfig:
    """Configuration for the git repository collaborator."""

    path: str = "."
    remote: str = "origin"
    push_tags: bool = False


@dataclass
class OrchestratorConfig:
    """Top-level configuration composing all sub-configs."""

    gate: GateConfig = field(default_factory=GateConfig)
    scans: ScanConfig = field(default_factory=ScanConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    targets: TargetConfig = field(default_factory=TargetConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    state_dir: str = STATE_DIR
    max_rollback_depth: int = DEFAULT_MAX_ROLLBACK_DEPTH
    log_level: str = "info"

    @property
    def events_path(self) -> Path:
        if self.notifications.events_file:
            return Path(self.notifications.events_file)
        return Path(self.state_dir) / EVENTS_FILE

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` for invalid values."""
        self.gate.thresholds()
        self.scans.tools()
        self.risk.risk_mapping()
        self.risk.risk_approval_levels()
        self.targets.rules()
        if self.scans.per_tool_timeout <= 0:
            raise ConfigurationError("scans.per_tool_timeout must be positive")
        if self.deploy.health_retries < 1:
            raise ConfigurationError("deploy.health_retries must be at least 1")
        if self.deploy.health_timeout <= 0:
            raise ConfigurationError("deploy.health_timeout must be positive")
        if self.max_rollback_depth < 1:
            raise ConfigurationError("max_rollback_depth must be at least 1")
        if self.gate.preset and self.gate.preset not in GATE_PRESETS:
            raise ConfigurationError(
                f"Unknown gate preset '{self.gate.preset}'; "
                f"available: {', '.join(GATE_PRESETS)}"
            )


def _pick(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Filter *data* to only keys accepted by *cls*."""
    valid = {f.name for f in cls.__dataclass_fields__.values()}
    return {k: v for k, v in data.items() if k in valid}


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section '{key}' must be a mapping")
    return value


def _build_gate_config(gate_raw: dict[str, Any]) -> GateConfig:
    """Apply a preset first, then let explicit keys override it."""
    preset = gate_raw.get("preset") or ""
    values: dict[str, Any] = {}
    if preset:
        if preset not in GATE_PRESETS:
            raise ConfigurationError(
                f"Unknown gate preset '{preset}'; available: {', '.join(GATE_PRESETS)}"
            )
        values.update(GATE_PRESETS[preset])
    values.update(_pick(gate_raw, GateConfig))
    return GateConfig(**values)


def load_orchestrator_config(path: Path | str | None = None) -> OrchestratorConfig:
    """Load orchestrator configuration from a YAML file.

    Missing top-level sections fall back to defaults.  Unknown keys are
    silently ignored so that forward-compatible config files work.

    Args:
        path: Path to config YAML.  If ``None`` or the file does not
              exist, returns full defaults.

    Returns:
        Populated and validated configuration dataclass.

    Raises:
        ConfigurationError: If the file is not valid YAML or contains
            invalid values.
    """
    if path is None:
        return OrchestratorConfig()

    path = Path(path)
    if not path.exists():
        return OrchestratorConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    sections = ("gate", "scans", "risk", "targets", "deploy", "notifications", "repository")
    top_level = _pick(raw, OrchestratorConfig)
    for key in sections:
        top_level.pop(key, None)

    try:
        cfg = OrchestratorConfig(
            gate=_build_gate_config(_section(raw, "gate")),
            scans=ScanConfig(**_pick(_section(raw, "scans"), ScanConfig)),
            risk=RiskConfig(**_pick(_section(raw, "risk"), RiskConfig)),
            targets=TargetConfig(**_pick(_section(raw, "targets"), TargetConfig)),
            deploy=DeployConfig(**_pick(_section(raw, "deploy"), DeployConfig)),
            notifications=NotificationConfig(
                **_pick(_section(raw, "notifications"), NotificationConfig)
            ),
            repository=RepositoryConfig(**_pick(_section(raw, "repository"), RepositoryConfig)),
            **top_level,
        )
    except TypeError as exc:
        raise ConfigurationError(f"Invalid configuration in {path}: {exc}") from exc

    cfg.validate()
    return cfg
