"""Tests for the release-orchestrator command-line interface."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from src.release_orchestrator.cli import _run_with_shutdown, app
from src.release_orchestrator.notifications import MemorySink
from src.release_orchestrator.pipeline import Collaborators
from src.release_orchestrator.state import DeploymentRecord
from src.release_shared.models import Environment, ScanTool

from tests.release.conftest import (
    FakeArtifactRegistry,
    FakeBuilder,
    FakeDeployer,
    FakeRepository,
    clean_scanners,
    scanners_with,
)

runner = CliRunner()


class _Fakes:
    def __init__(self) -> None:
        self.repository = FakeRepository(tags=["v1.9.0"])
        self.builder = FakeBuilder()
        self.deployer = FakeDeployer()
        self.artifacts = FakeArtifactRegistry()
        self.scanners = clean_scanners()
        self.sink = MemorySink()
        self.configs: list = []

    def build(self, config, approvals=None, extra_sinks=()):
        self.configs.append(config)
        return Collaborators(
            repository=self.repository,
            builder=self.builder,
            deployer=self.deployer,
            approvals=approvals,
            notifier=self.sink,
            artifacts=self.artifacts,
            scanners=list(self.scanners),
        )


@pytest.fixture
def fakes():
    fakes = _Fakes()
    with patch("src.release_orchestrator.cli.build_collaborators", side_effect=fakes.build), patch(
        "src.release_orchestrator.cli.setup_logging"
    ), patch("src.release_orchestrator.cli.GracefulShutdown", MagicMock()):
        yield fakes


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(f"state_dir: {tmp_path / 'state'}\nlog_level: warning\n", encoding="utf-8")
    return path


def _invoke(*args: str):
    return runner.invoke(app, list(args))


# ---------------------------------------------------------------------------
# init / version
# ---------------------------------------------------------------------------


class TestInit:
    def test_version(self):
        result = _invoke("--version")
        assert result.exit_code == 0
        assert "release-orchestrator" in result.output

    def test_writes_config_and_state_dir(self, tmp_path):
        result = _invoke("init", "--output-dir", str(tmp_path))
        assert result.exit_code == 0
        assert (tmp_path / "config.yaml").exists()
        assert (tmp_path / ".release-orchestrator").is_dir()
        assert "gate:" in (tmp_path / "config.yaml").read_text(encoding="utf-8")

    def test_does_not_overwrite_without_force(self, tmp_path):
        (tmp_path / "config.yaml").write_text("custom: true\n", encoding="utf-8")
        result = _invoke("init", "--output-dir", str(tmp_path))
        assert result.exit_code == 0
        assert "already exists" in result.output
        assert (tmp_path / "config.yaml").read_text(encoding="utf-8") == "custom: true\n"

    def test_force_overwrites(self, tmp_path):
        (tmp_path / "config.yaml").write_text("custom: true\n", encoding="utf-8")
        result = _invoke("init", "--output-dir", str(tmp_path), "--force")
        assert result.exit_code == 0
        assert "custom" not in (tmp_path / "config.yaml").read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# plan / gate
# ---------------------------------------------------------------------------


class TestPlan:
    def test_plan_for_main(self, fakes, config_file):
        result = _invoke("plan", "main", "--config", str(config_file))
        assert result.exit_code == 0, result.output
        assert "Deployment Plan" in result.output
        assert "Staging" in result.output
        assert fakes.repository.created == []
        assert fakes.deployer.calls == []
        assert fakes.configs[0].deploy.dry_run is True

    def test_unmapped_branch_goes_to_development(self, fakes, config_file):
        result = _invoke("plan", "docs/readme", "--config", str(config_file))
        assert result.exit_code == 0
        assert "Development" in result.output
        assert "Production" not in result.output

    def test_unknown_environment(self, fakes, config_file):
        result = _invoke("plan", "main", "--env", "moon", "--config", str(config_file))
        assert result.exit_code == 1
        assert "Unknown environment" in result.output

    def test_invalid_config(self, fakes, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("gate: [unclosed\n", encoding="utf-8")
        result = _invoke("plan", "main", "--config", str(bad))
        assert result.exit_code == 1
        assert "Invalid YAML" in result.output


class TestGate:
    def test_passing_gate_writes_report(self, fakes, config_file, tmp_path):
        report = tmp_path / "out" / "gate.md"
        result = _invoke("gate", "--report", str(report), "--config", str(config_file))
        assert result.exit_code == 0, result.output
        assert "PASSED" in result.output
        assert report.read_text(encoding="utf-8").startswith("## Security Gate Report")
        assert fakes.configs[0].deploy.dry_run is True

    def test_blocked_gate_exits_non_zero(self, fakes, config_file):
        fakes.scanners = scanners_with(ScanTool.SAST, critical_count=2)
        result = _invoke("gate", "--scope", "production", "--config", str(config_file))
        assert result.exit_code == 1
        assert "BLOCKED" in result.output


# ---------------------------------------------------------------------------
# deploy / status / history
# ---------------------------------------------------------------------------


class TestDeploy:
    def test_feature_branch(self, fakes, config_file, tmp_path):
        summary = tmp_path / "summary.md"
        result = _invoke(
            "deploy", "feature/login", "--actor", "alice", "--summary", str(summary),
            "--config", str(config_file),
        )
        assert result.exit_code == 0, result.output
        assert fakes.deployer.environments == [Environment.DEVELOPMENT]
        assert "SUCCEEDED" in result.output
        assert summary.read_text(encoding="utf-8").startswith("## Deployment Summary")
        assert fakes.configs[0].deploy.dry_run is False

        record = DeploymentRecord.load(None, tmp_path / "state")
        assert record is not None
        assert record.state == "succeeded"
        assert record.request.actor == "alice"

    def test_blocked_by_gate(self, fakes, config_file):
        fakes.scanners = scanners_with(ScanTool.SCA, critical_count=1)
        result = _invoke("deploy", "release/2.0.0", "--config", str(config_file))
        assert result.exit_code == 1
        assert fakes.deployer.calls == []

    def test_denied_production_release(self, fakes, config_file):
        fakes.repository.tags.append("v2.0.0")
        result = _invoke(
            "deploy", "v2.0.0", "--kind", "tag", "--env", "production", "--deny",
            "--config", str(config_file),
        )
        assert result.exit_code == 1
        assert "approval_denied" in result.output
        assert fakes.deployer.calls == []

    def test_approved_production_release(self, fakes, config_file):
        fakes.repository.tags.append("v2.0.0")
        result = _invoke(
            "deploy", "v2.0.0", "--kind", "tag", "--env", "production", "--approve",
            "--config", str(config_file),
        )
        assert result.exit_code == 0, result.output
        assert fakes.deployer.environments == [Environment.PRODUCTION]


    def test_dry_run_flag(self, fakes, config_file):
        result = _invoke("deploy", "feature/login", "--dry-run", "--config", str(config_file))
        assert result.exit_code == 0, result.output
        assert fakes.configs[0].deploy.dry_run is True

    def test_missing_deploy_command(self, config_file):
        with patch("src.release_orchestrator.cli.setup_logging"):
            result = _invoke("deploy", "feature/login", "--config", str(config_file))
        assert result.exit_code == 1
        assert "deploy.command" in result.output


class TestStatusAndHistory:
    def test_status_without_runs(self, fakes, config_file):
        result = _invoke("status", "--config", str(config_file))
        assert result.exit_code == 1
        assert "No deployment record found" in result.output

    def test_status_and_history_after_deploy(self, fakes, config_file):
        deployed = _invoke("deploy", "feature/login", "--config", str(config_file))
        assert deployed.exit_code == 0, deployed.output

        status = _invoke("status", "--config", str(config_file))
        assert status.exit_code == 0
        assert "feature/login" in status.output

        history = _invoke("history", "--config", str(config_file))
        assert history.exit_code == 0
        assert "Development" in history.output

        filtered = _invoke("history", "--env", "production", "--config", str(config_file))
        assert filtered.exit_code == 0
        assert "Development" not in filtered.output

    def test_status_clear(self, fakes, config_file, tmp_path):
        deployed = _invoke("deploy", "feature/login", "--config", str(config_file))
        assert deployed.exit_code == 0, deployed.output
        assert (tmp_path / "state").is_dir()

        cleared = _invoke("status", "--clear", "--config", str(config_file))
        assert cleared.exit_code == 0
        assert "Cleared" in cleared.output
        assert not (tmp_path / "state").exists()

        after = _invoke("status", "--config", str(config_file))
        assert after.exit_code == 1
        assert "No deployment record found" in after.output


class TestRunWithShutdown:
    def test_handlers_removed_after_run(self):
        with patch("src.release_orchestrator.cli.GracefulShutdown") as shutdown_cls:
            factory = AsyncMock(return_value="record")
            result = asyncio.run(_run_with_shutdown(MagicMock(), "run-1", factory))

        shutdown = shutdown_cls.return_value
        assert result == "record"
        shutdown.install.assert_called_once()
        shutdown.set_run.assert_called_once()
        shutdown.uninstall.assert_called_once()

    def test_handlers_removed_when_run_raises(self):
        with patch("src.release_orchestrator.cli.GracefulShutdown") as shutdown_cls:
            factory = AsyncMock(side_effect=RuntimeError("boom"))
            with pytest.raises(RuntimeError):
                asyncio.run(_run_with_shutdown(MagicMock(), "run-1", factory))

        shutdown_cls.return_value.uninstall.assert_called_once()


# ---------------------------------------------------------------------------
# rollback
# ---------------------------------------------------------------------------


class TestRollback:
    def test_conflicting_targets(self, fakes, config_file):
        result = _invoke(
            "rollback", "staging", "--run-id", "r1", "--to-version", "v1.0.0",
            "--config", str(config_file),
        )
        assert result.exit_code == 1
        assert "either --run-id or --to-version" in result.output

    def test_no_history(self, fakes, config_file):
        result = _invoke("rollback", "staging", "--reason", "bad deploy", "--config", str(config_file))
        assert result.exit_code == 1
        assert "rollback_target_invalid" in result.output
        assert fakes.deployer.calls == []
