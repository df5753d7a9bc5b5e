"""Structured JSON logging with trace_id support."""
from __future__ import annotations

import contextvars
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

TRACE_HEADER = "X-Trace-ID"

# Context variable for trace_id; orchestration runs bind it to their run id.
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trace_id", default=""
)


class JSONFormatter(logging.Formatter):
    """Custom JSON log formatter."""

    def __init__(self, service_name: str = "unknown") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service_name": self.service_name,
            "logger": record.name,
            "trace_id": trace_id_var.get(""),
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = str(record.exc_info[1])
        return json.dumps(log_entry)


def setup_logging(
    service_name: str,
    level: str = "INFO",
    logger_names: tuple[str, ...] = ("src",),
    json_output: bool = True,
) -> logging.Logger:
    """Configure logging for a service.

    Handlers are attached to the package loggers named in *logger_names*
    so every module logger (``logging.getLogger(__name__)``) inherits them.

    Args:
        service_name: Name of the service for log entries.
        level: Log level string (e.g. "INFO", "DEBUG").
        logger_names: Package loggers to configure.
        json_output: Emit JSON lines; plain text otherwise.

    Returns:
        The logger for the first configured package.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    configured: list[logging.Logger] = []
    for name in logger_names:
        logger = logging.getLogger(name)
        logger.setLevel(numeric_level)

        # Remove existing handlers
        logger.handlers.clear()

        handler = logging.StreamHandler()
        if json_output:
            handler.setFormatter(JSONFormatter(service_name=service_name))
        else:
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            )
        logger.addHandler(handler)
        logger.propagate = False
        configured.append(logger)

    return configured[0]


class TraceIDMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware that sets a trace_id per request.

    An incoming ``X-Trace-ID`` header is reused so callers can correlate
    webhook deliveries with orchestrator logs.
    """

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        request_trace_id = request.headers.get(TRACE_HEADER) or str(uuid.uuid4())
        token = trace_id_var.set(request_trace_id)
        try:
            response = await call_next(request)
        finally:
            trace_id_var.reset(token)
        response.headers[TRACE_HEADER] = request_trace_id
        return response
