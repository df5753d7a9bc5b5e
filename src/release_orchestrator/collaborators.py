"""Default implementations of the orchestrator's external collaborators.

These cover the command-line use case: a local git checkout, build and
scan reports written to disk by earlier CI steps, a deploy command, and
an artifact directory.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import typer

from src.quality_gate.report_parsers import ReportParseError, parse_report_file
from src.release_orchestrator.config import OrchestratorConfig
from src.release_orchestrator.exceptions import ConfigurationError, PipelineError, ScanUnavailable
from src.release_orchestrator.health import HttpHealthChecker
from src.release_orchestrator.notifications import build_sink
from src.release_orchestrator.pipeline import Collaborators
from src.release_shared.models import (
    ApprovalDecision,
    BuildResult,
    DeploymentRequest,
    DeployResult,
    Environment,
    RiskAssessment,
    ScanFinding,
    ScanTool,
    Scope,
)
from src.release_shared.protocols import (
    ApprovalGate,
    Deployer,
    HealthChecker,
    NotificationSink,
    SecurityScanner,
)
from src.release_shared.utils import load_json

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


async def run_command(
    args: list[str],
    cwd: Path | str | None = None,
    timeout: float = 60.0,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run *args* and capture its output.

    Raises:
        PipelineError: If the command cannot be started or times out.
    """
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Command %s timed out after %ss", args[0], timeout)
        raise PipelineError(f"Command '{' '.join(args)}' timed out after {timeout}s")
    except OSError as exc:
        raise PipelineError(f"Command '{args[0]}' could not be started: {exc}") from exc
    finally:
        if proc is not None and proc.returncode is None:
            proc.kill()
            await proc.wait()

    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class GitRepository:
    """Repository gateway backed by the ``git`` CLI."""

    def __init__(self, path: Path | str = ".", remote: str = "origin", push_tags: bool = False) -> None:
        self._path = Path(path)
        self._remote = remote
        self._push_tags = push_tags

    async def _git(self, *args: str) -> str:
        result = await run_command(["git", *args], cwd=self._path)
        if result.returncode != 0:
            raise PipelineError(
                f"git {' '.join(args)} failed (exit {result.returncode}): {result.stderr.strip()[:500]}"
            )
        return result.stdout

    async def resolve_sha(self, ref: str) -> str:
        return (await self._git("rev-parse", f"{ref}^{{commit}}")).strip()

    async def list_tags(self, ref: str) -> list[str]:
        output = await self._git("tag", "--merged", ref)
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def create_tag(self, tag: str, sha: str) -> None:
        await self._git("tag", tag, sha)
        logger.info("Created tag %s at %s", tag, sha[:7])
        if self._push_tags:
            await self._git("push", self._remote, tag)
            logger.info("Pushed tag %s to %s", tag, self._remote)


# ---------------------------------------------------------------------------
# Build and scans
# ---------------------------------------------------------------------------


class ReportFileBuildExecutor:
    """Reads the outcome of an external build from a JSON report.

    Expected keys: ``success``, ``artifact_location``, ``tests_passed``,
    ``lint_passed`` and optionally ``error``.
    """

    def __init__(self, report_path: Path | str) -> None:
        self._report_path = Path(report_path)

    async def build(self, request: DeploymentRequest, sha: str) -> BuildResult:
        data = load_json(self._report_path)
        if not isinstance(data, dict):
            return BuildResult(success=False, error=f"Build report not found: {self._report_path}")
        return BuildResult(
            success=bool(data.get("success", False)),
            artifact_location=str(data.get("artifact_location", "")),
            tests_passed=data.get("tests_passed"),
            lint_passed=data.get("lint_passed"),
            error=str(data.get("error", "")),
        )


class ReportFileScanner:
    """Scanner that parses a report file produced by an external tool."""

    def __init__(self, tool: ScanTool, report_path: Path | str) -> None:
        self._tool = tool
        self._report_path = Path(report_path)

    @property
    def tool(self) -> ScanTool:
        return self._tool

    async def scan(self, artifact_ref: str, scope: Scope) -> list[ScanFinding]:
        try:
            return parse_report_file(self._report_path, self._tool)
        except ReportParseError as exc:
            raise ScanUnavailable(self._tool.value, str(exc)) from exc


# ---------------------------------------------------------------------------
# Deploy
# ---------------------------------------------------------------------------


class CommandDeployer:
    """Deploys by running a command template.

    The command receives ``APP_ENV``, ``APP_VERSION``, ``ARTIFACT_LOCATION``
    and ``SKIP_BUILD`` in its environment; ``{environment}`` and
    ``{version}`` placeholders in the arguments are substituted.  The last
    stdout line starting with ``http`` is taken as the deployed URL.
    """

    def __init__(self, command: list[str], timeout: float = 900.0, cwd: Path | str | None = None) -> None:
        if not command:
            raise ValueError("CommandDeployer requires a non-empty command")
        self._command = list(command)
        self._timeout = timeout
        self._cwd = cwd

    async def deploy(
        self,
        environment: Environment,
        version: str,
        artifact_location: str,
        skip_build: bool = False,
    ) -> DeployResult:
        args = [
            part.format(environment=environment.value, version=version)
            for part in self._command
        ]
        env = {
            **os.environ,
            "APP_ENV": environment.value,
            "APP_VERSION": version,
            "ARTIFACT_LOCATION": artifact_location,
            "SKIP_BUILD": "true" if skip_build else "false",
        }
        try:
            result = await run_command(args, cwd=self._cwd, timeout=self._timeout, env=env)
        except PipelineError as exc:
            return DeployResult(success=False, error=str(exc))

        if result.returncode != 0:
            return DeployResult(
                success=False,
                error=f"exit {result.returncode}: {result.stderr.strip()[:500]}",
            )
        urls = [line.strip() for line in result.stdout.splitlines() if line.strip().startswith("http")]
        return DeployResult(success=True, deployed_url=urls[-1] if urls else None)


class DryRunDeployer:
    """Pretends every deployment succeeds."""

    def __init__(self) -> None:
        self.calls: list[tuple[Environment, str, str, bool]] = []

    async def deploy(
        self,
        environment: Environment,
        version: str,
        artifact_location: str,
        skip_build: bool = False,
    ) -> DeployResult:
        self.calls.append((environment, version, artifact_location, skip_build))
        logger.info("[dry-run] deploy %s to %s", version, environment.value)
        return DeployResult(success=True)


# ---------------------------------------------------------------------------
# Artifacts and approvals
# ---------------------------------------------------------------------------


class DirectoryArtifactRegistry:
    """Artifacts live at ``<root>/<version>``."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    async def locate(self, version: str) -> str | None:
        candidate = self._root / version
        if candidate.exists():
            return str(candidate)
        return None


class StaticApprovalGate:
    """Returns a fixed decision."""

    def __init__(self, approved: bool, approver: str = "auto", comment: str = "") -> None:
        self._decision = ApprovalDecision(approved=approved, approver=approver, comment=comment)

    async def request_approval(
        self, run_id: str, version: str, assessment: RiskAssessment
    ) -> ApprovalDecision:
        return self._decision


class ConsoleApprovalGate:
    """Prompts on the terminal for an approve/deny decision."""

    def __init__(self, approver: str = "") -> None:
        self._approver = approver or os.environ.get("USER", "operator")

    async def request_approval(
        self, run_id: str, version: str, assessment: RiskAssessment
    ) -> ApprovalDecision:
        question = (
            f"Run {run_id}: deploy {version} "
            f"({assessment.release_type.value} release, {assessment.risk_level.value} risk)?"
        )
        approved = await asyncio.to_thread(typer.confirm, question, default=False)
        return ApprovalDecision(approved=approved, approver=self._approver)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_collaborators(
    config: OrchestratorConfig,
    approvals: ApprovalGate | None = None,
    extra_sinks: Iterable[NotificationSink] = (),
) -> Collaborators:
    """Wire the default collaborators described by *config*.

    Args:
        config: Loaded orchestrator configuration.
        approvals: Approval gate to use.  Defaults to a console prompt.
        extra_sinks: Additional notification sinks, e.g. an in-memory
            sink used by the HTTP gateway.
    """
    enabled = set(config.scans.tools())
    scanners: list[SecurityScanner] = []
    for name, path in config.scans.reports.items():
        try:
            tool = ScanTool(name)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown scan tool in scans.reports: {name}") from exc
        if tool in enabled and tool != ScanTool.BUILD:
            scanners.append(ReportFileScanner(tool, path))
    health_checker: HealthChecker | None = None
    if config.deploy.dry_run:
        logger.warning("Dry run: deployments are simulated and nothing is shipped")
        deployer: Deployer = DryRunDeployer()
    elif not config.deploy.command:
        raise ConfigurationError(
            "No deploy command configured; set deploy.command or deploy.dry_run: true"
        )
    else:
        deployer = CommandDeployer(
            config.deploy.command,
            timeout=config.deploy.timeout,
            cwd=config.repository.path,
        )
        if config.deploy.health_check:
            health_checker = HttpHealthChecker(
                timeout=config.deploy.health_timeout,
                retries=config.deploy.health_retries,
                retry_delay=config.deploy.health_retry_delay,
            )
    return Collaborators(
        repository=GitRepository(
            config.repository.path,
            remote=config.repository.remote,
            push_tags=config.repository.push_tags,
        ),
        builder=ReportFileBuildExecutor(config.scans.build_report),
        deployer=deployer,
        approvals=approvals or ConsoleApprovalGate(),
        notifier=build_sink(config, extra_sinks),
        artifacts=DirectoryArtifactRegistry(config.deploy.artifact_root),
        scanners=scanners,
        health_checker=health_checker,
    )
