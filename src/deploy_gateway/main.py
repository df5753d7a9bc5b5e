"""Deployment gateway FastAPI application."""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.deploy_gateway.services.run_registry import build_registry
from src.shared.config import GatewayConfig
from src.shared.constants import GATEWAY_SERVICE_NAME, VERSION
from src.shared.errors import register_exception_handlers
from src.shared.logging import TraceIDMiddleware, setup_logging

config = GatewayConfig()
logger = setup_logging(GATEWAY_SERVICE_NAME, config.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - initialize and cleanup resources."""
    app.state.start_time = time.time()
    app.state.registry = build_registry(config)

    logger.info(
        "Service started: name=%s version=%s config=%s",
        GATEWAY_SERVICE_NAME, VERSION, config.config_path,
    )
    yield

    await app.state.registry.shutdown()
    logger.info("Service stopped: name=%s", GATEWAY_SERVICE_NAME)


app = FastAPI(
    title="Deployment Gateway",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(TraceIDMiddleware)
register_exception_handlers(app)

# Register all routers
from src.deploy_gateway.routers.health import router as health_router
from src.deploy_gateway.routers.deployments import router as deployments_router

app.include_router(health_router)
app.include_router(deployments_router)
