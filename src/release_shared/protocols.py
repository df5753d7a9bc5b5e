"""Runtime-checkable protocols for orchestrator collaborators."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from src.release_shared.models import (
    ApprovalDecision,
    BuildResult,
    DeploymentEvent,
    DeploymentRequest,
    DeployResult,
    Environment,
    HealthCheckResult,
    RiskAssessment,
    ScanFinding,
    ScanTool,
    Scope,
)


@runtime_checkable
class RepositoryGateway(Protocol):
    """Protocol for source repository access."""

    async def resolve_sha(self, ref: str) -> str:
        """Resolve *ref* to a full commit SHA."""
        ...

    async def list_tags(self, ref: str) -> list[str]:
        """List tags reachable from *ref*."""
        ...

    async def create_tag(self, tag: str, sha: str) -> None:
        """Create *tag* pointing at *sha*."""
        ...


@runtime_checkable
class BuildExecutor(Protocol):
    """Protocol for the build collaborator."""

    async def build(self, request: DeploymentRequest, sha: str) -> BuildResult:
        """Build the artifact for *sha*.

        Args:
            request: The originating deployment request.
            sha: Commit SHA being built.

        Returns:
            Build outcome including test and lint status.
        """
        ...


@runtime_checkable
class SecurityScanner(Protocol):
    """Protocol for a single scan tool."""

    @property
    def tool(self) -> ScanTool:
        """Return the tool this scanner reports for."""
        ...

    async def scan(self, artifact_ref: str, scope: Scope) -> list[ScanFinding]:
        """Scan an artifact and return raw findings.

        Args:
            artifact_ref: Artifact location or commit SHA.
            scope: Scope the results will be gated against.

        Returns:
            Findings for this tool.
        """
        ...


@runtime_checkable
class Deployer(Protocol):
    """Protocol for the deploy collaborator."""

    async def deploy(
        self,
        environment: Environment,
        version: str,
        artifact_location: str,
        skip_build: bool = False,
    ) -> DeployResult:
        """Deploy *version* to *environment*."""
        ...


@runtime_checkable
class ApprovalGate(Protocol):
    """Protocol for manual approval of high-risk releases."""

    async def request_approval(
        self, run_id: str, version: str, assessment: RiskAssessment
    ) -> ApprovalDecision:
        """Block until an approve/deny decision is available."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Protocol for deployment event delivery."""

    async def publish(self, event: DeploymentEvent) -> None:
        """Deliver *event*; failures must not propagate."""
        ...


@runtime_checkable
class ArtifactRegistry(Protocol):
    """Protocol for locating previously built artifacts."""

    async def locate(self, version: str) -> str | None:
        """Return the artifact location for *version*, or None if missing."""
        ...


@runtime_checkable
class HealthChecker(Protocol):
    """Protocol for verifying a deployed environment responds."""

    async def check(self, environment: Environment, url: str) -> HealthCheckResult:
        """Request *url* and report whether *environment* is healthy."""
        ...
