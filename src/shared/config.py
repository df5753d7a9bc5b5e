"""Gateway configuration using pydantic-settings."""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class SharedConfig(BaseSettings):
    """Base configuration shared by the HTTP services."""
    log_level: str = Field(default="info", validation_alias="LOG_LEVEL")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class GatewayConfig(SharedConfig):
    """Configuration for the deployment gateway service."""
    config_path: str = Field(
        default="config.yaml", validation_alias="RELEASE_CONFIG_PATH"
    )
    state_dir: str | None = Field(default=None, validation_alias="RELEASE_STATE_DIR")
    approval_timeout: float = Field(
        default=3600.0, validation_alias="APPROVAL_TIMEOUT"
    )
    max_concurrent_runs: int = Field(
        default=8, validation_alias="MAX_CONCURRENT_RUNS"
    )
