"""Shared test fixtures for the release orchestrator test suite."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.release_shared.models import (
    DeploymentRequest,
    GateThresholds,
    RefKind,
)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Return a fresh orchestrator state directory."""
    path = tmp_path / ".release-orchestrator"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def fixed_now() -> datetime:
    """A fixed UTC clock reading used for SHA/timestamp versions."""
    return datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def default_thresholds() -> GateThresholds:
    return GateThresholds()


@pytest.fixture
def feature_request() -> DeploymentRequest:
    return DeploymentRequest(ref="feature/x", ref_kind=RefKind.BRANCH, actor="alice")
