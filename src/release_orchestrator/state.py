"""Deployment record persistence with atomic writes."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from src.release_orchestrator.exceptions import RecordSealedError
from src.release_shared.constants import (
    LAST_RUN_FILE,
    RECORDS_DIR,
    STATE_DIR,
    STATE_PENDING,
    TERMINAL_STATES,
)
from src.release_shared.models import (
    ApprovalDecision,
    DeploymentRequest,
    Environment,
    EnvironmentOutcome,
    EnvironmentStatus,
    ErrorKind,
    GateResult,
    GateThresholds,
    ResolvedVersion,
    RiskAssessment,
)
from src.release_shared.utils import atomic_write_json, load_json, new_run_id, utc_now_iso


@dataclass
class DeploymentRecord:
    """Represents the full state of one orchestration run.

    Created at run start and mutated by the orchestrator.  Once the
    record reaches a terminal state it is sealed: any further attribute
    assignment raises :class:`RecordSealedError` and its collections
    become read-only.  Persisted to ``runs/<run_id>.json`` using atomic
    writes.
    """

    request: DeploymentRequest
    run_id: str = field(default_factory=new_run_id)
    thresholds: GateThresholds = field(default_factory=GateThresholds)
    state: str = STATE_PENDING
    previous_state: str = ""
    sha: str = ""
    targets: list[Environment] = field(default_factory=list)
    resolved_versions: dict[str, ResolvedVersion] = field(default_factory=dict)
    scan_summary: dict[str, Any] = field(default_factory=dict)
    gate_results: dict[str, GateResult] = field(default_factory=dict)
    risk_assessment: RiskAssessment | None = None
    approval: ApprovalDecision | None = None
    environments: dict[str, EnvironmentOutcome] = field(default_factory=dict)
    artifact_location: str = ""
    outcome_status: str = ""
    error_kind: ErrorKind | None = None
    message: str = ""
    timestamps: dict[str, str] = field(default_factory=dict)
    rollback_of: str | None = None
    sealed: bool = False
    schema_version: int = 1

    def __post_init__(self) -> None:
        if not self.timestamps:
            self.timestamps[self.state] = utc_now_iso()

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("sealed", False):
            raise RecordSealedError(self.__dict__.get("run_id", ""))
        super().__setattr__(name, value)

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _ensure_mutable(self) -> None:
        if self.sealed:
            raise RecordSealedError(self.run_id)

    def mark_state(self, state: str) -> None:
        """Record entry into *state*; seals the record when terminal."""
        self._ensure_mutable()
        self.previous_state = self.state
        self.state = state
        self.timestamps[state] = utc_now_iso()
        if state in TERMINAL_STATES:
            if not self.outcome_status:
                self.outcome_status = state
            self.seal()

    def set_targets(
        self, targets: tuple[Environment, ...], versions: dict[Environment, ResolvedVersion]
    ) -> None:
        self._ensure_mutable()
        self.targets = list(targets)
        self.resolved_versions = {env.value: versions[env] for env in targets}
        self.environments = {
            env.value: EnvironmentOutcome(environment=env, version=versions[env].raw)
            for env in targets
        }

    def set_gate_result(self, result: GateResult) -> None:
        self._ensure_mutable()
        self.gate_results[result.scope.value] = result

    def gate_for(self, environment: Environment) -> GateResult | None:
        return self.gate_results.get(environment.scope.value)

    def update_environment(
        self,
        environment: Environment,
        status: EnvironmentStatus,
        url: str = "",
        error: str = "",
    ) -> EnvironmentOutcome:
        self._ensure_mutable()
        outcome = self.environments.get(environment.value)
        if outcome is None:
            version = self.resolved_versions.get(environment.value)
            outcome = EnvironmentOutcome(
                environment=environment, version=version.raw if version else ""
            )
            self.environments[environment.value] = outcome
        now = utc_now_iso()
        if not outcome.started_at:
            outcome.started_at = now
        outcome.status = status
        outcome.url = url
        outcome.error = error
        if status != EnvironmentStatus.PENDING:
            outcome.finished_at = now
        return outcome

    def settle_pending(self, status: EnvironmentStatus, reason: str) -> list[Environment]:
        """Give every target still pending an explicit final *status*.

        Returns:
            The environments that were settled.
        """
        self._ensure_mutable()
        settled = [
            env
            for env in self.targets
            if env.value not in self.environments
            or self.environments[env.value].status == EnvironmentStatus.PENDING
        ]
        for env in settled:
            self.update_environment(env, status, error=reason)
        return settled

    def fail(self, error_kind: ErrorKind, message: str) -> None:
        """Record the error that will drive the terminal transition."""
        self._ensure_mutable()
        self.error_kind = error_kind
        self.message = message

    def seal(self) -> None:
        """Freeze the record.  Idempotent."""
        if self.sealed:
            return
        for outcome in self.environments.values():
            outcome.freeze()
        object.__setattr__(self, "targets", tuple(self.targets))
        for name in ("resolved_versions", "gate_results", "environments", "timestamps", "scan_summary"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        object.__setattr__(self, "sealed", True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def deployed_environments(self) -> list[Environment]:
        return [
            Environment(key)
            for key, outcome in self.environments.items()
            if outcome.status == EnvironmentStatus.SUCCEEDED
        ]

    def version_for(self, environment: Environment) -> str:
        resolved = self.resolved_versions.get(environment.value)
        return resolved.raw if resolved else ""

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialise the record to a plain dictionary."""
        return {
            "run_id": self.run_id,
            "request": self.request.to_dict(),
            "thresholds": self.thresholds.to_dict(),
            "state": self.state,
            "previous_state": self.previous_state,
            "sha": self.sha,
            "targets": [env.value for env in self.targets],
            "resolved_versions": {k: v.to_dict() for k, v in self.resolved_versions.items()},
            "scan_summary": dict(self.scan_summary),
            "gate_results": {k: v.to_dict() for k, v in self.gate_results.items()},
            "risk_assessment": self.risk_assessment.to_dict() if self.risk_assessment else None,
            "approval": self.approval.to_dict() if self.approval else None,
            "environments": {k: v.to_dict() for k, v in self.environments.items()},
            "artifact_location": self.artifact_location,
            "outcome": {
                "status": self.outcome_status,
                "error_kind": self.error_kind.value if self.error_kind else None,
                "message": self.message,
            },
            "timestamps": dict(self.timestamps),
            "rollback_of": self.rollback_of,
            "sealed": self.sealed,
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentRecord:
        outcome = data.get("outcome") or {}
        risk = data.get("risk_assessment")
        approval = data.get("approval")
        record = cls(
            request=DeploymentRequest.from_dict(data["request"]),
            run_id=data["run_id"],
            thresholds=GateThresholds.from_dict(data.get("thresholds") or {}),
            state=data.get("state", STATE_PENDING),
            previous_state=data.get("previous_state", ""),
            sha=data.get("sha", ""),
            targets=[Environment(e) for e in data.get("targets", [])],
            resolved_versions={
                k: ResolvedVersion.from_dict(v)
                for k, v in (data.get("resolved_versions") or {}).items()
            },
            scan_summary=dict(data.get("scan_summary") or {}),
            gate_results={
                k: GateResult.from_dict(v) for k, v in (data.get("gate_results") or {}).items()
            },
            risk_assessment=RiskAssessment.from_dict(risk) if risk else None,
            approval=ApprovalDecision(**approval) if approval else None,
            environments={
                k: EnvironmentOutcome.from_dict(v)
                for k, v in (data.get("environments") or {}).items()
            },
            artifact_location=data.get("artifact_location", ""),
            outcome_status=outcome.get("status", ""),
            error_kind=ErrorKind(outcome["error_kind"]) if outcome.get("error_kind") else None,
            message=outcome.get("message", ""),
            timestamps=dict(data.get("timestamps") or {}),
            rollback_of=data.get("rollback_of"),
            schema_version=int(data.get("schema_version", 1)),
        )
        if data.get("sealed") or record.is_terminal:
            record.seal()
        return record

    def save(self, directory: Path | str | None = None) -> Path:
        """Persist the record and update the last-run pointer.

        Args:
            directory: State directory.  Defaults to the standard state
                       directory location.

        Returns:
            The path the record was written to.
        """
        directory = Path(directory) if directory else Path(STATE_DIR)
        target = directory / RECORDS_DIR / f"{self.run_id}.json"
        payload = self.to_dict()
        atomic_write_json(target, payload)
        atomic_write_json(directory / LAST_RUN_FILE, {"run_id": self.run_id})
        return target

    @classmethod
    def load(
        cls, run_id: str | None = None, directory: Path | str | None = None
    ) -> DeploymentRecord | None:
        """Load a record by run id, or the most recent run when omitted.

        Returns:
            Reconstructed ``DeploymentRecord``, or ``None`` if the file is
            missing or invalid.
        """
        directory = Path(directory) if directory else Path(STATE_DIR)
        if run_id is None:
            pointer = load_json(directory / LAST_RUN_FILE)
            if not pointer or "run_id" not in pointer:
                return None
            run_id = pointer["run_id"]
        data = load_json(directory / RECORDS_DIR / f"{run_id}.json")
        if data is None:
            return None
        try:
            return cls.from_dict(data)
        except (KeyError, ValueError, TypeError):
            return None

    @classmethod
    def clear(cls, directory: Path | str | None = None) -> None:
        """Remove the state directory if it exists."""
        directory = Path(directory) if directory else Path(STATE_DIR)
        if directory.exists():
            shutil.rmtree(directory)
