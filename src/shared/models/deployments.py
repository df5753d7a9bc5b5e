"""Pydantic v2 models for the deployment gateway API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from src.release_shared.models import (
    DeploymentRequest,
    Environment,
    RefKind,
    RollbackRequest,
    TriggerSource,
)


class DeploymentCreate(BaseModel):
    """Body of ``POST /api/deployments``."""
    ref: str = Field(min_length=1)
    ref_kind: RefKind = RefKind.BRANCH
    actor: str = Field(min_length=1)
    environment: Environment | None = None
    force_version: str | None = None
    emergency: bool = False
    trigger: TriggerSource | None = None
    sha: str | None = None
    reason: str = ""

    def to_request(self) -> DeploymentRequest:
        """Build the orchestrator request; an environment implies a manual trigger."""
        trigger = self.trigger
        if trigger is None:
            trigger = TriggerSource.MANUAL if self.environment else TriggerSource.PUSH
        return DeploymentRequest(
            ref=self.ref,
            ref_kind=self.ref_kind,
            actor=self.actor,
            environment_override=self.environment,
            force_version=self.force_version,
            emergency=self.emergency,
            trigger=trigger,
            sha=self.sha,
            reason=self.reason,
        )


class RollbackCreate(BaseModel):
    """Body of ``POST /api/rollbacks``."""
    environment: Environment
    actor: str = Field(min_length=1)
    reason: str = ""
    target_run_id: str | None = None
    target_version: str | None = None

    def to_request(self) -> RollbackRequest:
        return RollbackRequest(
            environment=self.environment,
            actor=self.actor,
            reason=self.reason,
            target_run_id=self.target_run_id,
            target_version=self.target_version,
        )


class ApprovalSubmit(BaseModel):
    """Body of ``POST /api/deployments/{run_id}/approval``."""
    approved: bool
    approver: str = Field(min_length=1)
    comment: str = ""


class RunAccepted(BaseModel):
    """Response for an accepted run."""
    run_id: str
    state: str
    status_url: str


class GateViolationOut(BaseModel):
    rule: str
    deduction: int
    blocking: bool
    message: str = ""
    unknown: bool = False


class GateResultOut(BaseModel):
    scope: str
    score: int
    passed: bool
    pass_threshold: int
    violations: list[GateViolationOut] = Field(default_factory=list)


class EnvironmentOutcomeOut(BaseModel):
    environment: str
    version: str = ""
    status: str
    url: str = ""
    error: str = ""
    started_at: str = ""
    finished_at: str = ""


class RunOutcome(BaseModel):
    status: str = ""
    error_kind: str | None = None
    message: str = ""


class DeploymentRunResponse(BaseModel):
    """Current view of a deployment run."""
    run_id: str
    state: str
    previous_state: str = ""
    sha: str = ""
    request: dict[str, Any]
    targets: list[str] = Field(default_factory=list)
    resolved_versions: dict[str, dict[str, Any]] = Field(default_factory=dict)
    gate_results: dict[str, GateResultOut] = Field(default_factory=dict)
    risk_assessment: dict[str, Any] | None = None
    approval: dict[str, Any] | None = None
    environments: dict[str, EnvironmentOutcomeOut] = Field(default_factory=dict)
    outcome: RunOutcome = Field(default_factory=RunOutcome)
    rollback_of: str | None = None
    sealed: bool = False
    awaiting_approval: bool = False

    model_config = {"extra": "ignore"}


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
