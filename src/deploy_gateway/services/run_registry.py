"""Background run registry for the deployment gateway.

Runs are started as asyncio tasks on the server's event loop.  Approval
requests park on a future until ``POST /approval`` resolves it or the
approval timeout elapses (which counts as a denial).
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from src.release_orchestrator.collaborators import build_collaborators
from src.release_orchestrator.config import load_orchestrator_config
from src.release_orchestrator.pipeline import DeploymentOrchestrator
from src.release_orchestrator.state import DeploymentRecord
from src.release_shared.models import (
    ApprovalDecision,
    DeploymentRequest,
    RiskAssessment,
    RollbackRequest,
)
from src.release_shared.utils import new_run_id
from src.shared.config import GatewayConfig
from src.shared.errors import ConflictError, NotFoundError, ServiceUnavailableError

logger = logging.getLogger(__name__)


class PendingApprovalGate:
    """Approval gate answered over HTTP."""

    def __init__(self, timeout: float = 3600.0) -> None:
        self._timeout = timeout
        self._pending: dict[str, asyncio.Future[ApprovalDecision]] = {}

    def is_pending(self, run_id: str) -> bool:
        future = self._pending.get(run_id)
        return future is not None and not future.done()

    async def request_approval(
        self, run_id: str, version: str, assessment: RiskAssessment
    ) -> ApprovalDecision:
        future: asyncio.Future[ApprovalDecision] = asyncio.get_running_loop().create_future()
        self._pending[run_id] = future
        logger.info(
            "Run %s awaiting approval for %s (%s risk)",
            run_id, version, assessment.risk_level.value,
        )
        try:
            return await asyncio.wait_for(future, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Approval for run %s timed out after %ss", run_id, self._timeout)
            return ApprovalDecision(approved=False, approver="", comment="Approval timed out")
        finally:
            self._pending.pop(run_id, None)

    def submit(self, run_id: str, decision: ApprovalDecision) -> bool:
        """Resolve a pending approval.  Returns False if none is pending."""
        future = self._pending.get(run_id)
        if future is None or future.done():
            return False
        future.set_result(decision)
        return True


class RunRegistry:
    """Starts, tracks and controls runs on behalf of the HTTP layer."""

    def __init__(
        self,
        orchestrator: DeploymentOrchestrator,
        approvals: PendingApprovalGate,
        state_dir: Path | str,
        max_concurrent_runs: int = 8,
    ) -> None:
        self._orchestrator = orchestrator
        self._approvals = approvals
        self._state_dir = Path(state_dir)
        self._max_concurrent = max_concurrent_runs
        self._tasks: dict[str, asyncio.Task[DeploymentRecord]] = {}

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def start(self, request: DeploymentRequest) -> str:
        run_id = new_run_id()
        await self._spawn(run_id, self._orchestrator.run(request, run_id=run_id))
        return run_id

    async def start_rollback(self, request: RollbackRequest) -> str:
        run_id = new_run_id()
        await self._spawn(run_id, self._orchestrator.rollback(request, run_id=run_id))
        return run_id

    async def _spawn(self, run_id: str, coro) -> None:
        if self.active_count >= self._max_concurrent:
            coro.close()
            raise ServiceUnavailableError(
                f"Too many active runs ({self._max_concurrent}); retry later"
            )
        task = asyncio.create_task(coro, name=f"run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda t: self._on_done(run_id, t))
        # Let the run register itself before the caller queries it.
        await asyncio.sleep(0)

    def _on_done(self, run_id: str, task: asyncio.Task[DeploymentRecord]) -> None:
        self._tasks.pop(run_id, None)
        if task.cancelled():
            logger.warning("Run task %s was cancelled", run_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Run task %s raised: %s", run_id, exc)

    def get(self, run_id: str) -> DeploymentRecord:
        record = self._orchestrator.get_active_record(run_id)
        if record is None:
            record = DeploymentRecord.load(run_id, self._state_dir)
        if record is None:
            raise NotFoundError(f"Deployment run '{run_id}' not found")
        return record

    def awaiting_approval(self, run_id: str) -> bool:
        return self._approvals.is_pending(run_id)

    def approve(self, run_id: str, decision: ApprovalDecision) -> DeploymentRecord:
        record = self.get(run_id)
        if not self._approvals.submit(run_id, decision):
            raise ConflictError(f"Run '{run_id}' is not awaiting approval (state={record.state})")
        return record

    def cancel(self, run_id: str) -> bool:
        record = self.get(run_id)
        if record.is_terminal:
            raise ConflictError(f"Run '{run_id}' already finished ({record.state})")
        return self._orchestrator.cancel(run_id)

    async def shutdown(self) -> None:
        """Cancel every active run and wait for them to seal their records."""
        tasks = list(self._tasks.items())
        for run_id, task in tasks:
            self._orchestrator.cancel(run_id)
            task.cancel()
        if tasks:
            await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)


def build_registry(config: GatewayConfig) -> RunRegistry:
    """Wire the orchestrator and registry from gateway settings."""
    orchestrator_config = load_orchestrator_config(config.config_path)
    if config.state_dir:
        orchestrator_config.state_dir = config.state_dir
    approvals = PendingApprovalGate(timeout=config.approval_timeout)
    collaborators = build_collaborators(orchestrator_config, approvals=approvals)
    orchestrator = DeploymentOrchestrator(orchestrator_config, collaborators)
    return RunRegistry(
        orchestrator,
        approvals,
        state_dir=orchestrator_config.state_dir,
        max_concurrent_runs=config.max_concurrent_runs,
    )
