"""Shared fakes and fixtures for release orchestrator tests."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from src.release_orchestrator.config import OrchestratorConfig
from src.release_orchestrator.history import DeploymentHistory
from src.release_orchestrator.notifications import MemorySink
from src.release_orchestrator.pipeline import Collaborators, DeploymentOrchestrator
from src.release_shared.constants import HISTORY_FILE
from src.release_shared.models import (
    ApprovalDecision,
    BuildResult,
    DeploymentRequest,
    DeployResult,
    Environment,
    RiskAssessment,
    ScanFinding,
    ScanMetric,
    ScanTool,
    Scope,
)

FULL_SHA = "abcdef1234567890abcdef1234567890abcdef12"


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeRepository:
    """In-memory git repository."""

    def __init__(self, sha: str = FULL_SHA, tags: list[str] | None = None) -> None:
        self.sha = sha
        self.tags = list(tags or [])
        self.created: list[tuple[str, str]] = []

    async def resolve_sha(self, ref: str) -> str:
        return self.sha

    async def list_tags(self, ref: str) -> list[str]:
        return list(self.tags)

    async def create_tag(self, tag: str, sha: str) -> None:
        self.created.append((tag, sha))
        self.tags.append(tag)


class FakeBuilder:
    def __init__(self, result: BuildResult | None = None) -> None:
        self.result = result or BuildResult(
            success=True,
            artifact_location="artifacts/app.tar.gz",
            tests_passed=True,
            lint_passed=True,
        )
        self.calls: list[tuple[DeploymentRequest, str]] = []

    async def build(self, request: DeploymentRequest, sha: str) -> BuildResult:
        self.calls.append((request, sha))
        return self.result


class FakeScanner:
    """Returns fixed metric values, or raises / hangs on demand."""

    def __init__(
        self,
        tool: ScanTool,
        values: dict[ScanMetric, Any] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self._tool = tool
        self.values = values or {}
        self.error = error
        self.delay = delay
        self.scopes: list[Scope] = []

    @property
    def tool(self) -> ScanTool:
        return self._tool

    async def scan(self, artifact_ref: str, scope: Scope) -> list[ScanFinding]:
        self.scopes.append(scope)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [
            ScanFinding(tool=self._tool, metric=metric, value=value)
            for metric, value in self.values.items()
        ]


class FakeDeployer:
    def __init__(self, fail: set[Environment] | None = None) -> None:
        self.fail = set(fail or ())
        self.calls: list[tuple[Environment, str, str, bool]] = []

    async def deploy(
        self,
        environment: Environment,
        version: str,
        artifact_location: str,
        skip_build: bool = False,
    ) -> DeployResult:
        self.calls.append((environment, version, artifact_location, skip_build))
        if environment in self.fail:
            return DeployResult(success=False, error="health check failed")
        return DeployResult(success=True, deployed_url=f"https://{environment.value}.example.com")

    @property
    def environments(self) -> list[Environment]:
        return [call[0] for call in self.calls]


class FakeApprovalGate:
    """Answers immediately, or blocks until ``release()`` when *wait* is set."""

    def __init__(self, approved: bool = True, approver: str = "bob", wait: bool = False) -> None:
        self.decision = ApprovalDecision(approved=approved, approver=approver)
        self.wait = wait
        self.requests: list[tuple[str, str, RiskAssessment]] = []
        self.requested = asyncio.Event()
        self._release = asyncio.Event()

    def release(self) -> None:
        self._release.set()

    async def request_approval(
        self, run_id: str, version: str, assessment: RiskAssessment
    ) -> ApprovalDecision:
        self.requests.append((run_id, version, assessment))
        self.requested.set()
        if self.wait:
            await self._release.wait()
        return self.decision


class FakeArtifactRegistry:
    def __init__(self, known: dict[str, str] | None = None) -> None:
        self.known = dict(known or {})

    async def locate(self, version: str) -> str | None:
        return self.known.get(version)


# ---------------------------------------------------------------------------
# Scan presets
# ---------------------------------------------------------------------------


def clean_scanners() -> list[FakeScanner]:
    """Scanners reporting a healthy codebase."""
    return [
        FakeScanner(
            ScanTool.CODE_QUALITY,
            {
                ScanMetric.COVERAGE: 88,
                ScanMetric.BLOCKER_COUNT: 0,
                ScanMetric.CRITICAL_COUNT: 0,
                ScanMetric.QUALITY_GATE_STATUS: "OK",
            },
        ),
        *(
            FakeScanner(
                tool,
                {ScanMetric.CRITICAL_COUNT: 0, ScanMetric.HIGH_COUNT: 0, ScanMetric.MEDIUM_COUNT: 0},
            )
            for tool in (ScanTool.SAST, ScanTool.SCA, ScanTool.IAC)
        ),
    ]


def scanners_with(tool: ScanTool, **overrides: Any) -> list[FakeScanner]:
    """Clean scanners with some metric values of *tool* replaced."""
    scanners = clean_scanners()
    for scanner in scanners:
        if scanner.tool == tool:
            for name, value in overrides.items():
                scanner.values[ScanMetric(name)] = value
    return scanners


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


class Harness:
    """Bundles an orchestrator with its fakes."""

    def __init__(
        self,
        state_dir: Path,
        now: datetime,
        tags: list[str] | None = None,
        scanners: list[FakeScanner] | None = None,
        builder: FakeBuilder | None = None,
        deployer: FakeDeployer | None = None,
        approvals: FakeApprovalGate | None = None,
        artifacts: FakeArtifactRegistry | None = None,
        config: OrchestratorConfig | None = None,
        health_checker: Any = None,
    ) -> None:
        self.config = config or OrchestratorConfig(state_dir=str(state_dir))
        self.config.state_dir = str(state_dir)
        self.repository = FakeRepository(tags=tags)
        self.builder = builder or FakeBuilder()
        self.scanners = clean_scanners() if scanners is None else scanners
        self.deployer = deployer or FakeDeployer()
        self.approvals = approvals or FakeApprovalGate()
        self.artifacts = artifacts or FakeArtifactRegistry()
        self.sink = MemorySink()
        self.history = DeploymentHistory(
            state_dir / HISTORY_FILE, max_rollback_depth=self.config.max_rollback_depth
        )
        self.orchestrator = DeploymentOrchestrator(
            self.config,
            Collaborators(
                repository=self.repository,
                builder=self.builder,
                deployer=self.deployer,
                approvals=self.approvals,
                notifier=self.sink,
                artifacts=self.artifacts,
                scanners=list(self.scanners),
                health_checker=health_checker,
            ),
            history=self.history,
            clock=lambda: now,
        )


@pytest.fixture
def make_harness(state_dir: Path, fixed_now: datetime):
    """Factory fixture: ``make_harness(tags=[...], scanners=[...])``."""

    def _make(**kwargs: Any) -> Harness:
        return Harness(state_dir, fixed_now, **kwargs)

    return _make
