"""Deployment orchestration pipeline.

Drives one run through the deployment state machine:

    pending -> version_resolved -> scanning -> gate_evaluated
        -> [risk_assessed] -> [awaiting_approval] -> deploying
        -> succeeded | failed | blocked | rolled_back | cancelled

Each state has a phase handler that performs the work for that state
and fires the next trigger.  Every transition is persisted to the
deployment record and published to the notification sink.  Callers
always receive a sealed, terminal :class:`DeploymentRecord`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from src.quality_gate.gate_engine import SecurityGateEvaluator
from src.quality_gate.scan_aggregator import ScanResultAggregator
from src.release_orchestrator.config import OrchestratorConfig
from src.release_orchestrator.exceptions import (
    ApprovalDenied,
    BuildFailed,
    DeployFailed,
    InvalidRequestError,
    InvalidVersionFormat,
    PipelineError,
    RollbackTargetInvalid,
    ScanUnavailable,
)
from src.release_orchestrator.history import DeploymentHistory, HistoryEntry
from src.release_orchestrator.locks import RefLockRegistry
from src.release_orchestrator.risk import RiskAssessor
from src.release_orchestrator.state import DeploymentRecord
from src.release_orchestrator.state_machine import create_deployment_machine
from src.release_orchestrator.targets import DeploymentTargetSelector
from src.release_orchestrator.versioning import (
    VersionResolver,
    parse_version,
    previous_release,
    try_parse_version,
)
from src.release_shared.constants import (
    HISTORY_FILE,
    STATE_AWAITING_APPROVAL,
    STATE_DEPLOYING,
    STATE_GATE_EVALUATED,
    STATE_PENDING,
    STATE_RISK_ASSESSED,
    STATE_SCANNING,
    STATE_VERSION_RESOLVED,
)
from src.release_shared.models import (
    BuildResult,
    DeploymentEvent,
    DeploymentRequest,
    DeployResult,
    Environment,
    EnvironmentStatus,
    ErrorKind,
    GateResult,
    NormalizedScanResult,
    RefKind,
    ResolvedVersion,
    RollbackRequest,
    ScanFinding,
    ScanTool,
    Scope,
    TriggerSource,
    VersionScheme,
)
from src.release_shared.protocols import (
    ApprovalGate,
    ArtifactRegistry,
    BuildExecutor,
    Deployer,
    HealthChecker,
    NotificationSink,
    RepositoryGateway,
    SecurityScanner,
)
from src.shared.logging import trace_id_var

logger = logging.getLogger(__name__)

# Exceptions that abort a run and the error kind recorded for each.
_ERROR_KINDS: tuple[tuple[type[PipelineError], ErrorKind], ...] = (
    (InvalidVersionFormat, ErrorKind.INVALID_VERSION_FORMAT),
    (InvalidRequestError, ErrorKind.INVALID_REQUEST),
    (RollbackTargetInvalid, ErrorKind.ROLLBACK_TARGET_INVALID),
    (BuildFailed, ErrorKind.BUILD_FAILED),
    (ScanUnavailable, ErrorKind.SCAN_UNAVAILABLE),
)


@dataclass
class Collaborators:
    """External collaborators used by the orchestrator."""

    repository: RepositoryGateway
    builder: BuildExecutor
    deployer: Deployer
    approvals: ApprovalGate
    notifier: NotificationSink
    artifacts: ArtifactRegistry
    scanners: list[SecurityScanner] = field(default_factory=list)
    health_checker: HealthChecker | None = None


@dataclass
class RunPlan:
    """Targets and versions a request would deploy, without side effects."""

    sha: str
    targets: tuple[Environment, ...]
    versions: dict[Environment, ResolvedVersion]
    existing_tags: list[str]


@dataclass
class _RunContext:
    """Mutable per-run state that is not part of the persisted record."""

    record: DeploymentRecord
    rollback: RollbackRequest | None = None
    existing_tags: list[str] = field(default_factory=list)
    scan: NormalizedScanResult | None = None
    resolution_done: bool = False
    cancel_requested: bool = False
    approval_task: asyncio.Future | None = None

    @property
    def is_rollback(self) -> bool:
        return self.rollback is not None


class DeploymentRunModel:
    """Model object for the ``transitions`` async state machine.

    Wraps a :class:`_RunContext` and exposes the guard methods required
    by :data:`TRANSITIONS`.  The ``state`` attribute is managed by the
    ``AsyncMachine`` (it reads/writes ``model.state``).
    """

    def __init__(self, ctx: _RunContext) -> None:
        self._ctx = ctx
        self.state: str = ctx.record.state

    # ---- Guard methods ---------------------------------------------------

    def has_resolved_versions(self, *args, **kwargs) -> bool:
        """True once target selection and version resolution finished."""
        return self._ctx.resolution_done

    def has_targets(self, *args, **kwargs) -> bool:
        return bool(self._ctx.record.targets)

    def has_no_targets(self, *args, **kwargs) -> bool:
        return not self._ctx.record.targets

    def is_rollback(self, *args, **kwargs) -> bool:
        return self._ctx.is_rollback

    def has_artifact(self, *args, **kwargs) -> bool:
        return bool(self._ctx.record.artifact_location)

    def has_gate_results(self, *args, **kwargs) -> bool:
        """True when every scope present in the targets has a gate result."""
        record = self._ctx.record
        scopes = {env.scope.value for env in record.targets}
        return bool(scopes) and scopes.issubset(record.gate_results.keys())

    def any_scope_passed(self, *args, **kwargs) -> bool:
        return any(result.passed for result in self._ctx.record.gate_results.values())

    def has_risk_assessment(self, *args, **kwargs) -> bool:
        return self._ctx.record.risk_assessment is not None

    def approval_required(self, *args, **kwargs) -> bool:
        assessment = self._ctx.record.risk_assessment
        return assessment is not None and assessment.approval_required

    def is_approved(self, *args, **kwargs) -> bool:
        approval = self._ctx.record.approval
        return approval is not None and approval.approved

    def all_deployments_succeeded(self, *args, **kwargs) -> bool:
        outcomes = self._ctx.record.environments.values()
        return all(o.status == EnvironmentStatus.SUCCEEDED for o in outcomes)


def _scheme_of(version: str) -> tuple[VersionScheme, object]:
    semantic = try_parse_version(version)
    if semantic is None:
        return VersionScheme.SHA_TIMESTAMP, None
    if semantic.is_prerelease:
        return VersionScheme.SEMANTIC_PRERELEASE, semantic
    return VersionScheme.SEMANTIC, semantic


class DeploymentOrchestrator:
    """Sequences build, scan, gate, risk, approval and deployment.

    Usage
    -----
    ::

        orchestrator = DeploymentOrchestrator(config, collaborators)
        record = await orchestrator.run(request)
        print(record.state, record.outcome_status)
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        collaborators: Collaborators,
        history: DeploymentHistory | None = None,
        locks: RefLockRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._collab = collaborators
        self._state_dir = Path(config.state_dir)
        self._history = history or DeploymentHistory(
            self._state_dir / HISTORY_FILE,
            max_rollback_depth=config.max_rollback_depth,
        )
        self._locks = locks or RefLockRegistry()
        self._clock = clock
        self._resolver = VersionResolver()
        self._selector = DeploymentTargetSelector(extra_rules=config.targets.rules())
        self._aggregator = ScanResultAggregator()
        self._evaluator = SecurityGateEvaluator()
        self._assessor = RiskAssessor(
            mapping=config.risk.risk_mapping(),
            approval_levels=config.risk.risk_approval_levels(),
            hotfix_patterns=config.risk.hotfix_patterns,
            emergency_bypass_approval=config.risk.emergency_bypass_approval,
        )
        self._active: dict[str, _RunContext] = {}

    @property
    def history(self) -> DeploymentHistory:
        return self._history

    @property
    def active_runs(self) -> list[str]:
        return list(self._active)

    def get_active_record(self, run_id: str) -> DeploymentRecord | None:
        ctx = self._active.get(run_id)
        return ctx.record if ctx else None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def plan(self, request: DeploymentRequest) -> RunPlan:
        """Compute targets and versions for *request* without side effects."""
        sha = request.sha or await self._collab.repository.resolve_sha(request.ref)
        tags = await self._collab.repository.list_tags(request.ref)
        targets, versions = self._select_and_resolve(request, sha, tags)
        return RunPlan(sha=sha, targets=targets, versions=versions, existing_tags=tags)

    async def run(self, request: DeploymentRequest, run_id: str | None = None) -> DeploymentRecord:
        """Execute a deployment run to a terminal state.

        Args:
            request: The deployment request.
            run_id: Optional explicit run id (generated when omitted).

        Returns:
            The sealed deployment record.
        """
        record = DeploymentRecord(request=request, thresholds=self._config.gate.thresholds())
        if run_id:
            record.run_id = run_id
        return await self._execute(_RunContext(record=record))

    async def rollback(
        self, request: RollbackRequest, run_id: str | None = None
    ) -> DeploymentRecord:
        """Redeploy a historical version to one environment.

        The target is re-validated against the artifact registry before
        anything is deployed; the deploy collaborator is invoked with
        ``skip_build=True``.
        """
        deployment_request = DeploymentRequest(
            ref=request.target_version or request.target_run_id or f"rollback/{request.environment.value}",
            ref_kind=RefKind.TAG,
            actor=request.actor,
            trigger=TriggerSource.MANUAL,
            reason=request.reason,
        )
        record = DeploymentRecord(
            request=deployment_request, thresholds=self._config.gate.thresholds()
        )
        if run_id:
            record.run_id = run_id
        return await self._execute(_RunContext(record=record, rollback=request))

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of an active run.

        A pending approval wait is interrupted immediately; a run that is
        deploying stops before its next environment.

        Returns:
            True if the run was active.
        """
        ctx = self._active.get(run_id)
        if ctx is None:
            return False
        ctx.cancel_requested = True
        if ctx.approval_task is not None and not ctx.approval_task.done():
            ctx.approval_task.cancel()
        logger.warning("Cancellation requested for run %s (state=%s)", run_id, ctx.record.state)
        return True

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _execute(self, ctx: _RunContext) -> DeploymentRecord:
        record = ctx.record
        model = DeploymentRunModel(ctx)
        create_deployment_machine(model, initial_state=STATE_PENDING)
        self._active[record.run_id] = ctx
        token = trace_id_var.set(record.run_id)
        logger.info(
            "Starting run %s for %s %s (actor=%s, trigger=%s%s)",
            record.run_id,
            record.request.ref_kind.value,
            record.request.ref,
            record.request.actor,
            record.request.trigger.value,
            ", rollback" if ctx.is_rollback else "",
        )
        try:
            record.save(self._state_dir)
            await self._publish(record, message="Run started")
            try:
                await self._run_loop(ctx, model)
            except PipelineError as exc:
                kind = next(
                    (k for cls, k in _ERROR_KINDS if isinstance(exc, cls)), ErrorKind.INTERNAL
                )
                logger.error("Run %s failed: %s", record.run_id, exc)
                await self._finish(ctx, model, "fail", kind, str(exc))
            except asyncio.CancelledError:
                if not record.is_terminal:
                    await self._finish(
                        ctx, model, "cancel", ErrorKind.CANCELLED, "Run task was cancelled"
                    )
                raise
            except Exception as exc:
                logger.exception("Run %s failed with an unexpected error", record.run_id)
                await self._finish(ctx, model, "fail", ErrorKind.INTERNAL, str(exc))
        finally:
            self._active.pop(record.run_id, None)
            if record.is_terminal:
                try:
                    self._history.record(record)
                except OSError as exc:
                    logger.error("Failed to update deployment history: %s", exc)
            trace_id_var.reset(token)

        logger.info(
            "Run %s finished: %s%s",
            record.run_id,
            record.state,
            f" ({record.error_kind.value}: {record.message})" if record.error_kind else "",
        )
        return record

    async def _run_loop(self, ctx: _RunContext, model: DeploymentRunModel) -> None:
        """Internal loop that drives phase transitions."""
        phase_handlers: dict[str, Callable[[_RunContext, DeploymentRunModel], Awaitable[None]]] = {
            STATE_PENDING: self._phase_resolve,
            STATE_VERSION_RESOLVED: self._phase_route,
            STATE_SCANNING: self._phase_scan,
            STATE_GATE_EVALUATED: self._phase_gate,
            STATE_RISK_ASSESSED: self._phase_risk,
            STATE_AWAITING_APPROVAL: self._phase_approval,
            STATE_DEPLOYING: self._phase_deploy,
        }

        max_iterations = 20  # Safety bound
        iteration = 0
        while not ctx.record.is_terminal and iteration < max_iterations:
            iteration += 1
            current = model.state

            # Deploying honours cancellation between environments itself.
            if ctx.cancel_requested and current != STATE_DEPLOYING:
                await self._finish(ctx, model, "cancel", ErrorKind.CANCELLED, "Run cancelled")
                break

            handler = phase_handlers.get(current)
            if handler is None:
                raise PipelineError(f"No handler for state '{current}'")
            await handler(ctx, model)

        if not ctx.record.is_terminal:
            raise PipelineError(f"Run did not reach a terminal state (stuck in '{model.state}')")

    async def _advance(self, ctx: _RunContext, model: DeploymentRunModel, trigger: str, **event) -> None:
        """Fire *trigger*, sync the record, persist and publish."""
        previous = model.state
        await getattr(model, trigger)()
        if model.state == previous:
            raise PipelineError(f"Transition '{trigger}' rejected in state '{previous}'")
        ctx.record.mark_state(model.state)
        ctx.record.save(self._state_dir)
        await self._publish(ctx.record, **event)

    async def _finish(
        self,
        ctx: _RunContext,
        model: DeploymentRunModel,
        trigger: str,
        kind: ErrorKind,
        message: str,
    ) -> None:
        if ctx.record.is_terminal:
            logger.error(
                "Run %s already %s; not recording %s: %s",
                ctx.record.run_id, ctx.record.state, kind.value, message,
            )
            return
        status = EnvironmentStatus.BLOCKED if trigger == "block" else EnvironmentStatus.SKIPPED
        settled = ctx.record.settle_pending(status, message)
        if settled:
            logger.info(
                "Run %s: %s marked %s",
                ctx.record.run_id, ", ".join(env.value for env in settled), status.value,
            )
        ctx.record.fail(kind, message)
        await self._advance(ctx, model, trigger, message=message)

    async def _publish(
        self,
        record: DeploymentRecord,
        environment: Environment | None = None,
        outcome: str | None = None,
        message: str = "",
    ) -> None:
        gate = record.gate_results.get(Scope.PRODUCTION.value) or record.gate_results.get(
            Scope.NON_PRODUCTION.value
        )
        if environment is not None:
            gate = record.gate_for(environment) or gate
        event = DeploymentEvent(
            run_id=record.run_id,
            state=record.state,
            environment=environment.value if environment else None,
            version=record.version_for(environment) if environment else None,
            outcome=outcome or (record.outcome_status if record.is_terminal else None),
            gate_score=gate.score if gate else None,
            risk_level=record.risk_assessment.risk_level.value if record.risk_assessment else None,
            message=message or record.message,
        )
        try:
            await self._collab.notifier.publish(event)
        except Exception:
            logger.exception("Notification sink raised for run %s", record.run_id)

    # ------------------------------------------------------------------
    # Target selection and versions
    # ------------------------------------------------------------------

    def _select_and_resolve(
        self, request: DeploymentRequest, sha: str, tags: list[str]
    ) -> tuple[tuple[Environment, ...], dict[Environment, ResolvedVersion]]:
        if request.force_version is not None:
            parse_version(request.force_version)

        targets = self._selector.select(
            request.ref,
            request.ref_kind,
            environment_override=request.environment_override,
            trigger=request.trigger,
            history=self._history,
        )
        if request.force_version is not None and Environment.PRODUCTION not in targets:
            raise InvalidRequestError(
                "force_version is only accepted when production is a target "
                f"(targets: {', '.join(t.value for t in targets) or 'none'})"
            )

        now = self._clock() if self._clock else None
        versions = {
            env: self._resolver.resolve(
                request.ref,
                request.ref_kind,
                env,
                tags,
                sha,
                now=now,
                force_version=request.force_version,
            )
            for env in targets
        }
        return targets, versions

    async def _phase_resolve(self, ctx: _RunContext, model: DeploymentRunModel) -> None:
        """Handle pending -> version_resolved."""
        if ctx.is_rollback:
            await self._resolve_rollback(ctx)
            ctx.resolution_done = True
            await self._advance(ctx, model, "versions_resolved")
            return

        record = ctx.record
        request = record.request
        async with self._locks.hold(request.ref):
            sha = request.sha or await self._collab.repository.resolve_sha(request.ref)
            tags = await self._collab.repository.list_tags(request.ref)
            targets, versions = self._select_and_resolve(request, sha, tags)

            record.sha = sha
            record.set_targets(targets, versions)
            ctx.existing_tags = list(tags)

            for tag in sorted({v.tag_to_create for v in versions.values() if v.tag_to_create}):
                await self._collab.repository.create_tag(tag, sha)
                ctx.existing_tags.append(tag)

        ctx.resolution_done = True
        logger.info(
            "Run %s targets: %s",
            record.run_id,
            ", ".join(f"{env.value}={versions[env].raw}" for env in targets) or "none",
        )
        await self._advance(ctx, model, "versions_resolved")

    async def _resolve_rollback(self, ctx: _RunContext) -> None:
        rollback = ctx.rollback
        assert rollback is not None
        environment = rollback.environment
        entry: HistoryEntry | None
        if rollback.target_run_id:
            entry = self._history.get(rollback.target_run_id, environment)
            if entry is None or not entry.succeeded:
                raise RollbackTargetInvalid(
                    f"Run {rollback.target_run_id} has no successful deployment to {environment.value}"
                )
        elif rollback.target_version:
            entry = self._history.find(environment, rollback.target_version)
            if entry is None:
                raise RollbackTargetInvalid(
                    f"Version {rollback.target_version} was never deployed to {environment.value}"
                )
        else:
            entry = self._history.previous(environment)
            if entry is None:
                raise RollbackTargetInvalid(
                    f"No previous deployment of {environment.value} to roll back to"
                )

        artifact = await self._collab.artifacts.locate(entry.version)
        if not artifact:
            raise RollbackTargetInvalid(
                f"Artifact for version {entry.version} no longer exists"
            )

        scheme, semantic = _scheme_of(entry.version)
        version = ResolvedVersion(
            environment=environment,
            raw=entry.version,
            scheme=scheme,
            semantic=semantic,  # type: ignore[arg-type]
        )
        record = ctx.record
        record.rollback_of = entry.run_id
        record.sha = entry.sha
        record.artifact_location = artifact
        record.set_targets((environment,), {environment: version})
        logger.info(
            "Rolling back %s to %s (from run %s, artifact %s)",
            environment.value,
            entry.version,
            entry.run_id,
            artifact,
        )

    async def _phase_route(self, ctx: _RunContext, model: DeploymentRunModel) -> None:
        """Handle version_resolved -> scanning | deploying | succeeded."""
        if ctx.is_rollback:
            await self._advance(ctx, model, "start_rollback")
        elif not ctx.record.targets:
            await self._advance(
                ctx, model, "nothing_to_deploy", message="Tag already released; nothing to deploy"
            )
        else:
            await self._advance(ctx, model, "start_scanning")

    # ------------------------------------------------------------------
    # Scanning and gate
    # ------------------------------------------------------------------

    async def _scan_one(
        self, scanner: SecurityScanner, artifact_ref: str, scope: Scope
    ) -> tuple[ScanTool, list[ScanFinding] | None]:
        tool = scanner.tool
        timeout = self._config.scans.per_tool_timeout
        try:
            findings = await asyncio.wait_for(scanner.scan(artifact_ref, scope), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Scanner %s timed out after %ss; treating as unknown", tool.value, timeout)
            return tool, None
        except ScanUnavailable as exc:
            logger.warning("Scanner %s unavailable: %s", tool.value, exc)
            return tool, None
        except Exception as exc:
            logger.warning("Scanner %s failed: %s; treating as unknown", tool.value, exc)
            return tool, None
        return tool, list(findings)

    async def _collect_scan(self, build: BuildResult, scope: Scope, artifact_ref: str) -> NormalizedScanResult:
        """Fan out enabled scanners and merge their findings with the build's."""
        enabled = self._config.scans.tools()
        scanners = [s for s in self._collab.scanners if s.tool in enabled and s.tool != ScanTool.BUILD]
        results = await asyncio.gather(
            *(self._scan_one(scanner, artifact_ref, scope) for scanner in scanners)
        )

        findings: list[ScanFinding] = []
        if ScanTool.BUILD in enabled:
            findings.extend(self._aggregator.from_build(build))
        unavailable: list[ScanTool] = []
        for tool, tool_findings in results:
            if tool_findings is None:
                unavailable.append(tool)
            else:
                findings.extend(tool_findings)
        return self._aggregator.aggregate(findings, enabled_tools=enabled, unavailable_tools=unavailable)

    async def evaluate_gate(
        self, request: DeploymentRequest, scopes: tuple[Scope, ...] = (Scope.PRODUCTION,)
    ) -> tuple[NormalizedScanResult, list[GateResult]]:
        """Build, scan and evaluate the gate without deploying anything.

        Raises:
            BuildFailed: If the build collaborator reports failure.
        """
        build = await self._collab.builder.build(request, request.sha or "")
        if not build.success:
            raise BuildFailed(build.error or "Build failed")
        ordered = sorted(set(scopes), key=lambda s: s != Scope.PRODUCTION)
        scan = await self._collect_scan(build, ordered[0], build.artifact_location or request.ref)
        thresholds = self._config.gate.thresholds()
        return scan, [self._evaluator.evaluate(scan, thresholds, scope) for scope in ordered]

    async def _phase_scan(self, ctx: _RunContext, model: DeploymentRunModel) -> None:
        """Handle scanning -> gate_evaluated: build, fan out scans, evaluate."""
        record = ctx.record
        build = await self._collab.builder.build(record.request, record.sha)
        if not build.success:
            raise BuildFailed(build.error or "Build failed")
        record.artifact_location = build.artifact_location
        logger.info("Build succeeded: artifact=%s", build.artifact_location or "-")

        scopes = sorted({env.scope for env in record.targets}, key=lambda s: s != Scope.PRODUCTION)
        # Scanners run once, against the strictest scope present.
        scan = await self._collect_scan(build, scopes[0], build.artifact_location or record.sha)
        ctx.scan = scan
        record.scan_summary = scan.to_dict()

        for scope in scopes:
            record.set_gate_result(self._evaluator.evaluate(scan, record.thresholds, scope))

        await self._advance(ctx, model, "gate_evaluated")

    def _risk_target(self, ctx: _RunContext) -> ResolvedVersion | None:
        """Latest-ordered Production-scope target with a semantic version."""
        for env in reversed(ctx.record.targets):
            if env.scope != Scope.PRODUCTION:
                continue
            resolved = ctx.record.resolved_versions.get(env.value)
            if resolved is not None and resolved.semantic is not None:
                return resolved
        return None

    async def _phase_gate(self, ctx: _RunContext, model: DeploymentRunModel) -> None:
        """Handle gate_evaluated -> risk_assessed | deploying | blocked."""
        record = ctx.record
        if not model.any_scope_passed():
            reasons = [
                f"{result.scope.value}: {result.primary_block_reason.message}"
                if result.primary_block_reason
                else f"{result.scope.value}: score {result.score} below {result.pass_threshold}"
                for result in record.gate_results.values()
            ]
            await self._finish(
                ctx, model, "block", ErrorKind.GATE_BLOCKED,
                "Security gate blocked deployment (" + "; ".join(reasons) + ")",
            )
            return

        production_gate = record.gate_results.get(Scope.PRODUCTION.value)
        target = self._risk_target(ctx)
        if target is not None and production_gate is not None and production_gate.passed:
            semantic = target.semantic
            assert semantic is not None
            previous = previous_release(ctx.existing_tags, semantic)
            record.risk_assessment = self._assessor.assess(
                semantic,
                previous,
                ref=record.request.ref,
                emergency=record.request.emergency,
            )
            await self._advance(ctx, model, "risk_assessed")
            return

        await self._advance(ctx, model, "start_deploying")

    async def _phase_risk(self, ctx: _RunContext, model: DeploymentRunModel) -> None:
        """Handle risk_assessed -> awaiting_approval | deploying."""
        if model.approval_required():
            await self._advance(ctx, model, "await_approval", message="Approval required")
        else:
            if ctx.record.request.emergency:
                logger.warning("Emergency deployment: approval bypassed for run %s", ctx.record.run_id)
            await self._advance(ctx, model, "start_deploying")

    async def _phase_approval(self, ctx: _RunContext, model: DeploymentRunModel) -> None:
        """Handle awaiting_approval -> deploying | blocked | cancelled.

        Waits on the approval collaborator with no timeout of its own.
        """
        record = ctx.record
        assessment = record.risk_assessment
        assert assessment is not None
        ctx.approval_task = asyncio.ensure_future(
            self._collab.approvals.request_approval(
                record.run_id, assessment.resolved_version, assessment
            )
        )
        try:
            decision = await ctx.approval_task
        except asyncio.CancelledError:
            if ctx.cancel_requested:
                await self._finish(ctx, model, "cancel", ErrorKind.CANCELLED, "Run cancelled during approval")
                return
            raise
        finally:
            ctx.approval_task = None

        record.approval = decision
        if decision.approved:
            logger.info("Run %s approved by %s", record.run_id, decision.approver or "unknown")
            await self._advance(ctx, model, "approved")
            return
        denied = ApprovalDenied(decision.approver, decision.comment)
        await self._finish(ctx, model, "block", ErrorKind.APPROVAL_DENIED, str(denied))

    # ------------------------------------------------------------------
    # Deploying
    # ------------------------------------------------------------------

    async def _phase_deploy(self, ctx: _RunContext, model: DeploymentRunModel) -> None:
        """Handle deploying -> succeeded | rolled_back | failed | blocked | cancelled.

        Environments are deployed in fixed order.  A failed deployment
        does not stop later environments; an environment whose scope is
        blocked by the gate is fatal and skips everything after it.
        """
        record = ctx.record
        fatal_reason = ""
        failures: list[str] = []

        for env in list(record.targets):
            if ctx.cancel_requested:
                self._skip_remaining(record, env)
                await self._finish(
                    ctx, model, "cancel", ErrorKind.CANCELLED,
                    f"Run cancelled before deploying {env.value}",
                )
                return

            if fatal_reason:
                record.update_environment(env, EnvironmentStatus.SKIPPED, error="Skipped after fatal gate block")
                continue

            gate = None if ctx.is_rollback else record.gate_for(env)
            if gate is not None and not gate.passed:
                reason = gate.primary_block_reason
                fatal_reason = (
                    f"{env.value}: {reason.message}" if reason
                    else f"{env.value}: gate score {gate.score} below {gate.pass_threshold}"
                )
                record.update_environment(env, EnvironmentStatus.BLOCKED, error=fatal_reason)
                logger.error("Deployment to %s blocked by security gate: %s", env.value, fatal_reason)
                await self._publish(record, environment=env, outcome=EnvironmentStatus.BLOCKED.value, message=fatal_reason)
                continue

            version = record.version_for(env)
            record.update_environment(env, EnvironmentStatus.PENDING)
            try:
                result = await self._collab.deployer.deploy(
                    env, version, record.artifact_location, skip_build=ctx.is_rollback
                )
            except Exception as exc:
                logger.exception("Deployer raised for %s", env.value)
                result = DeployResult(success=False, error=str(exc))

            if result.success:
                result = await self._verify_health(env, result)

            if result.success:
                record.update_environment(env, EnvironmentStatus.SUCCEEDED, url=result.deployed_url or "")
                logger.info("Deployed %s to %s%s", version, env.value,
                            f" ({result.deployed_url})" if result.deployed_url else "")
            else:
                error = str(DeployFailed(env.value, result.error or ""))
                record.update_environment(env, EnvironmentStatus.FAILED, error=error)
                failures.append(error)
                logger.error("Deployment to %s failed: %s", env.value, error)
            await self._publish(
                record,
                environment=env,
                outcome=record.environments[env.value].status.value,
                message=record.environments[env.value].error,
            )

        if fatal_reason:
            await self._finish(ctx, model, "block", ErrorKind.GATE_BLOCKED, fatal_reason)
        elif failures:
            await self._finish(ctx, model, "fail", ErrorKind.DEPLOY_FAILED, "; ".join(failures))
        elif ctx.is_rollback:
            await self._advance(ctx, model, "rollback_succeeded", message="Rollback completed")
        else:
            await self._advance(ctx, model, "deployments_succeeded")

    async def _verify_health(self, env: Environment, result: DeployResult) -> DeployResult:
        """Turn a successful deploy into a failure when its URL is unhealthy."""
        checker = self._collab.health_checker
        if checker is None or not result.deployed_url:
            return result
        try:
            health = await checker.check(env, result.deployed_url)
        except Exception as exc:
            logger.exception("Health checker raised for %s", env.value)
            return DeployResult(
                success=False, deployed_url=result.deployed_url, error=f"health check failed: {exc}"
            )
        if health.healthy:
            return result
        return DeployResult(
            success=False,
            deployed_url=result.deployed_url,
            error=f"health check failed for {health.url} after {health.attempts} attempt(s): {health.error}",
        )

    @staticmethod
    def _skip_remaining(record: DeploymentRecord, start: Environment) -> None:
        skipping = False
        for env in record.targets:
            if env == start:
                skipping = True
            if skipping:
                record.update_environment(env, EnvironmentStatus.SKIPPED, error="Run cancelled")
