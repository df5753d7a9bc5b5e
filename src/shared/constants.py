"""Shared constants used by the HTTP services."""
from __future__ import annotations

# Application version
VERSION: str = "1.0.0"

# Port numbers
GATEWAY_PORT: int = 8080

# Service names
GATEWAY_SERVICE_NAME: str = "deploy-gateway"
