"""Health check endpoint for the deployment gateway."""
from __future__ import annotations

import time

from fastapi import APIRouter, Request

from src.shared.constants import GATEWAY_SERVICE_NAME, VERSION
from src.shared.models.common import HealthStatus

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health", response_model=HealthStatus)
async def health(request: Request) -> HealthStatus:
    """Health check endpoint."""
    registry = getattr(request.app.state, "registry", None)
    start_time = getattr(request.app.state, "start_time", time.time())
    return HealthStatus(
        status="healthy" if registry is not None else "degraded",
        service_name=GATEWAY_SERVICE_NAME,
        version=VERSION,
        active_runs=registry.active_count if registry is not None else 0,
        uptime_seconds=time.time() - start_time,
    )
