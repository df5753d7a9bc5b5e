"""Integration tests for the deployment gateway routers using FastAPI TestClient."""
from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from src.deploy_gateway.main import app
from src.deploy_gateway.services.run_registry import PendingApprovalGate, RunRegistry
from src.release_orchestrator.config import OrchestratorConfig
from src.release_orchestrator.notifications import MemorySink
from src.release_orchestrator.pipeline import Collaborators, DeploymentOrchestrator
from src.release_shared.models import Environment

from tests.release.conftest import (
    FakeArtifactRegistry,
    FakeBuilder,
    FakeDeployer,
    FakeRepository,
    clean_scanners,
)


class GatewayHarness:
    """Registry wired to fake collaborators and an HTTP approval gate."""

    def __init__(self, state_dir: Path, max_concurrent_runs: int = 8) -> None:
        self.repository = FakeRepository(tags=["v1.9.3", "v2.0.0"])
        self.deployer = FakeDeployer()
        self.approvals = PendingApprovalGate(timeout=30)
        self.artifacts = FakeArtifactRegistry()
        config = OrchestratorConfig(state_dir=str(state_dir))
        self.orchestrator = DeploymentOrchestrator(
            config,
            Collaborators(
                repository=self.repository,
                builder=FakeBuilder(),
                deployer=self.deployer,
                approvals=self.approvals,
                notifier=MemorySink(),
                artifacts=self.artifacts,
                scanners=clean_scanners(),
            ),
        )
        self.registry = RunRegistry(
            self.orchestrator, self.approvals, state_dir, max_concurrent_runs=max_concurrent_runs
        )


def _client(harness: GatewayHarness):
    with patch("src.deploy_gateway.main.build_registry", return_value=harness.registry):
        with TestClient(app) as client:
            yield client


@pytest.fixture
def harness(tmp_path: Path) -> GatewayHarness:
    return GatewayHarness(tmp_path / "state")


@pytest.fixture
def client(harness: GatewayHarness):
    yield from _client(harness)


def _wait_for(client: TestClient, run_id: str, predicate, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        resp = client.get(f"/api/deployments/{run_id}")
        assert resp.status_code == 200, resp.text
        data = resp.json()
        if predicate(data):
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"Run {run_id} stuck in state {data['state']}")
        time.sleep(0.02)


def _sealed(data: dict) -> bool:
    return data["sealed"]


def _awaiting(data: dict) -> bool:
    return data["awaiting_approval"]


def _start_release(client: TestClient) -> str:
    resp = client.post(
        "/api/deployments", json={"ref": "v2.0.0", "ref_kind": "tag", "actor": "alice"}
    )
    assert resp.status_code == 202, resp.text
    return resp.json()["run_id"]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealthRouter:
    def test_health_returns_200(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["service_name"] == "deploy-gateway"
        assert data["active_runs"] == 0
        assert data["uptime_seconds"] >= 0

    def test_trace_header(self, client):
        resp = client.get("/api/health", headers={"X-Trace-ID": "trace-7"})
        assert resp.headers["X-Trace-ID"] == "trace-7"


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


class TestDeployments:
    def test_feature_branch_run(self, client, harness):
        resp = client.post("/api/deployments", json={"ref": "feature/api", "actor": "alice"})
        assert resp.status_code == 202
        accepted = resp.json()
        assert accepted["status_url"] == f"/api/deployments/{accepted['run_id']}"

        data = _wait_for(client, accepted["run_id"], _sealed)
        assert data["state"] == "succeeded"
        assert data["targets"] == ["development"]
        env = data["environments"]["development"]
        assert env["status"] == "succeeded"
        assert env["url"] == "https://development.example.com"
        assert data["request"]["actor"] == "alice"

    def test_invalid_body(self, client):
        resp = client.post("/api/deployments", json={"ref": "", "actor": "alice"})
        assert resp.status_code == 422

    def test_unknown_run(self, client):
        resp = client.get("/api/deployments/does-not-exist")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]


class TestApprovals:
    def test_approve_release(self, client, harness):
        run_id = _start_release(client)
        waiting = _wait_for(client, run_id, _awaiting)
        assert waiting["state"] == "awaiting_approval"
        assert waiting["risk_assessment"]["approval_required"] is True

        resp = client.post(
            f"/api/deployments/{run_id}/approval",
            json={"approved": True, "approver": "bob", "comment": "ship it"},
        )
        assert resp.status_code == 200

        data = _wait_for(client, run_id, _sealed)
        assert data["state"] == "succeeded"
        assert data["approval"]["approver"] == "bob"
        assert harness.deployer.calls

    def test_deny_release(self, client, harness):
        run_id = _start_release(client)
        _wait_for(client, run_id, _awaiting)

        client.post(f"/api/deployments/{run_id}/approval", json={"approved": False, "approver": "bob"})

        data = _wait_for(client, run_id, _sealed)
        assert data["state"] == "blocked"
        assert data["outcome"]["error_kind"] == "approval_denied"
        assert harness.deployer.calls == []

    def test_approval_when_not_waiting(self, client):
        resp = client.post("/api/deployments", json={"ref": "feature/api", "actor": "alice"})
        run_id = resp.json()["run_id"]
        _wait_for(client, run_id, _sealed)

        resp = client.post(f"/api/deployments/{run_id}/approval", json={"approved": True, "approver": "bob"})
        assert resp.status_code == 409


class TestCancel:
    def test_cancel_while_awaiting_approval(self, client, harness):
        run_id = _start_release(client)
        _wait_for(client, run_id, _awaiting)

        resp = client.post(f"/api/deployments/{run_id}/cancel")
        assert resp.status_code == 200
        assert resp.json() == {"run_id": run_id, "cancelled": True}

        data = _wait_for(client, run_id, _sealed)
        assert data["state"] == "cancelled"
        assert data["outcome"]["error_kind"] == "cancelled"
        assert harness.deployer.calls == []

    def test_cancel_finished_run(self, client):
        resp = client.post("/api/deployments", json={"ref": "feature/api", "actor": "alice"})
        run_id = resp.json()["run_id"]
        _wait_for(client, run_id, _sealed)

        assert client.post(f"/api/deployments/{run_id}/cancel").status_code == 409


class TestConcurrencyLimit:
    def test_rejects_when_full(self, tmp_path):
        harness = GatewayHarness(tmp_path / "state", max_concurrent_runs=1)
        for client in _client(harness):
            run_id = _start_release(client)
            _wait_for(client, run_id, _awaiting)

            resp = client.post("/api/deployments", json={"ref": "feature/api", "actor": "alice"})
            assert resp.status_code == 503
            assert client.get("/api/health").json()["active_runs"] == 1

            client.post(f"/api/deployments/{run_id}/cancel")
            _wait_for(client, run_id, _sealed)


# ---------------------------------------------------------------------------
# Rollbacks
# ---------------------------------------------------------------------------


class TestRollbacks:
    def test_rollback_without_history_fails(self, client, harness):
        resp = client.post("/api/rollbacks", json={"environment": "staging", "actor": "bob", "reason": "bad"})
        assert resp.status_code == 202

        data = _wait_for(client, resp.json()["run_id"], _sealed)
        assert data["state"] == "failed"
        assert data["outcome"]["error_kind"] == "rollback_target_invalid"
        assert harness.deployer.calls == []

    def test_rollback_after_release(self, client, harness):
        runs = []
        for _ in range(2):
            resp = client.post("/api/deployments", json={"ref": "feature/api", "actor": "alice"})
            runs.append(_wait_for(client, resp.json()["run_id"], _sealed))
        first = runs[0]
        version = first["environments"]["development"]["version"]
        harness.artifacts.known[version] = "artifacts/dev"
        harness.deployer.calls.clear()

        resp = client.post(
            "/api/rollbacks",
            json={"environment": "development", "actor": "bob", "target_run_id": first["run_id"]},
        )
        data = _wait_for(client, resp.json()["run_id"], _sealed)

        assert data["state"] == "rolled_back"
        assert data["rollback_of"] == first["run_id"]
        assert harness.deployer.calls == [(Environment.DEVELOPMENT, version, "artifacts/dev", True)]

    def test_invalid_environment(self, client):
        resp = client.post("/api/rollbacks", json={"environment": "moon", "actor": "bob"})
        assert resp.status_code == 422
