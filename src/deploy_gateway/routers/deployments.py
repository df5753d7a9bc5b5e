"""Deployment run endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Request

from src.deploy_gateway.services.run_registry import RunRegistry
from src.release_orchestrator.state import DeploymentRecord
from src.release_shared.models import ApprovalDecision
from src.shared.errors import ServiceUnavailableError
from src.shared.models.deployments import (
    ApprovalSubmit,
    CancelResponse,
    DeploymentCreate,
    DeploymentRunResponse,
    RollbackCreate,
    RunAccepted,
)

router = APIRouter(prefix="/api", tags=["deployments"])


def _registry(request: Request) -> RunRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise ServiceUnavailableError("Run registry is not initialised")
    return registry


def _to_response(registry: RunRegistry, record: DeploymentRecord) -> DeploymentRunResponse:
    return DeploymentRunResponse.model_validate(
        {**record.to_dict(), "awaiting_approval": registry.awaiting_approval(record.run_id)}
    )


def _accepted(registry: RunRegistry, run_id: str) -> RunAccepted:
    record = registry.get(run_id)
    return RunAccepted(
        run_id=run_id, state=record.state, status_url=f"/api/deployments/{run_id}"
    )


@router.post("/deployments", response_model=RunAccepted, status_code=202)
async def create_deployment(body: DeploymentCreate, request: Request) -> RunAccepted:
    """Start a deployment run in the background."""
    registry = _registry(request)
    run_id = await registry.start(body.to_request())
    return _accepted(registry, run_id)


@router.get("/deployments/{run_id}", response_model=DeploymentRunResponse)
async def get_deployment(run_id: str, request: Request) -> DeploymentRunResponse:
    """Get the current record of a run."""
    registry = _registry(request)
    return _to_response(registry, registry.get(run_id))


@router.post("/deployments/{run_id}/approval", response_model=DeploymentRunResponse)
async def submit_approval(
    run_id: str, body: ApprovalSubmit, request: Request
) -> DeploymentRunResponse:
    """Approve or deny a run that is awaiting approval."""
    registry = _registry(request)
    record = registry.approve(
        run_id,
        ApprovalDecision(approved=body.approved, approver=body.approver, comment=body.comment),
    )
    return _to_response(registry, record)


@router.post("/deployments/{run_id}/cancel", response_model=CancelResponse)
async def cancel_deployment(run_id: str, request: Request) -> CancelResponse:
    """Request cancellation of an active run."""
    registry = _registry(request)
    return CancelResponse(run_id=run_id, cancelled=registry.cancel(run_id))


@router.post("/rollbacks", response_model=RunAccepted, status_code=202)
async def create_rollback(body: RollbackCreate, request: Request) -> RunAccepted:
    """Start a rollback run in the background."""
    registry = _registry(request)
    run_id = await registry.start_rollback(body.to_request())
    return _accepted(registry, run_id)
