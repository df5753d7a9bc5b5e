"""Custom exception classes and FastAPI exception handlers."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from src.release_orchestrator.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    InvalidVersionFormat,
    PipelineError,
)


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str, status_code: int = 500) -> None:
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)


class ValidationError(AppError):
    """Validation error (422)."""

    def __init__(self, detail: str = "Validation error") -> None:
        super().__init__(detail=detail, status_code=422)


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, detail: str = "Resource not found") -> None:
        super().__init__(detail=detail, status_code=404)


class ConflictError(AppError):
    """Conflict error (409)."""

    def __init__(self, detail: str = "Conflict") -> None:
        super().__init__(detail=detail, status_code=409)


class ServiceUnavailableError(AppError):
    """Service unavailable (503)."""

    def __init__(self, detail: str = "Service unavailable") -> None:
        super().__init__(detail=detail, status_code=503)


def _pipeline_status(exc: PipelineError) -> int:
    if isinstance(exc, (InvalidRequestError, InvalidVersionFormat)):
        return 422
    if isinstance(exc, ConfigurationError):
        return 503
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    """Register custom exception handlers with a FastAPI app."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        return JSONResponse(
            status_code=_pipeline_status(exc),
            content={"detail": str(exc), "error": type(exc).__name__},
        )
