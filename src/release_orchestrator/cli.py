"""Command-line entry point for the release orchestrator.

Usage:
    release-orchestrator init [--output-dir DIR]
    release-orchestrator plan REF [--kind branch|tag] [--env ENV]
    release-orchestrator gate [--scope production|non-production]
    release-orchestrator deploy REF [--kind ...] [--env ENV] [--force-version V] [--dry-run]
    release-orchestrator rollback ENV [--run-id ID | --to-version V]
    release-orchestrator status [RUN_ID] [--clear]
    release-orchestrator history [--env ENV] [--limit N]
    release-orchestrator serve [--host HOST] [--port PORT]
"""

from __future__ import annotations

import asyncio
import getpass
import os
from pathlib import Path
from typing import Annotated, Any, Optional

import typer

from src.quality_gate.report import generate_gate_report, generate_run_summary
from src.release_orchestrator.collaborators import (
    ConsoleApprovalGate,
    StaticApprovalGate,
    build_collaborators,
)
from src.release_orchestrator.config import OrchestratorConfig, load_orchestrator_config
from src.release_orchestrator.display import (
    print_environment_table,
    print_error_panel,
    print_final_summary,
    print_gate_result,
    print_history_table,
    print_plan,
    print_run_header,
)
from src.release_orchestrator.exceptions import PipelineError
from src.release_orchestrator.history import DeploymentHistory
from src.release_orchestrator.pipeline import DeploymentOrchestrator
from src.release_orchestrator.shutdown import GracefulShutdown
from src.release_orchestrator.state import DeploymentRecord
from src.release_shared import __version__
from src.release_shared.constants import HISTORY_FILE, STATE_ROLLED_BACK, STATE_SUCCEEDED
from src.release_shared.models import (
    DeploymentRequest,
    Environment,
    RefKind,
    RollbackRequest,
    Scope,
    TriggerSource,
)
from src.release_shared.utils import new_run_id
from src.shared.logging import setup_logging

app = typer.Typer(
    name="release-orchestrator",
    help="Versioned, gated, multi-environment deployments.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

_DEFAULT_CONFIG_TEMPLATE = """\
# Release orchestrator configuration

# Security gate thresholds.  A preset (strict, moderate, minimal) is
# applied first; explicit keys below override it.
gate:
  preset: ""
  min_coverage: 75
  max_critical: 0
  max_high: 5
  max_medium: 10
  max_blocker: 0
  max_critical_issues: 0
  pass_threshold: 50

# Scan inputs.  Reports are written by earlier CI steps.
scans:
  enabled_tools: [build, code_quality, sast, sca, iac]
  per_tool_timeout: 600  # seconds
  build_report: reports/build.json
  reports:
    code_quality: reports/sonar.json
    sast: reports/sast.sarif
    sca: reports/sca.sarif
    iac: reports/iac.sarif

# Release risk and approval policy.
risk:
  mapping:
    major: critical
    minor: high
    patch: medium
    hotfix: high
  approval_levels: [critical, high]
  hotfix_patterns: ["hotfix/*", "v*-hotfix.*"]
  emergency_bypass_approval: true

# Extra ref -> environment rules, evaluated after tag rules.
targets:
  extra_rules: []

# A deploy command is required unless dry_run is true.  Dry runs only
# simulate deployments and never ship anything.
deploy:
  command: []  # e.g. ["./deploy.sh", "{environment}", "{version}"]
  timeout: 900
  artifact_root: artifacts
  dry_run: false
  # GET the deployed URL after each deployment and rollback; a non-2xx
  # answer after all retries fails the environment.
  health_check: true
  health_timeout: 10.0
  health_retries: 3
  health_retry_delay: 5.0

notifications:
  log_events: true
  events_file: ""
  webhook_url: ""
  webhook_timeout: 10.0

repository:
  path: "."
  remote: origin
  push_tags: false

state_dir: .release-orchestrator
max_rollback_depth: 5
log_level: info
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"release-orchestrator {__version__}")
        raise typer.Exit()


def _exit_with_error(message: str | Exception, code: int = 1) -> None:
    print_error_panel(message)
    raise typer.Exit(code=code)


def _load_config(config_path: Path | None) -> OrchestratorConfig:
    try:
        config = load_orchestrator_config(config_path)
    except PipelineError as exc:
        _exit_with_error(exc)
    setup_logging("release-orchestrator", level=config.log_level, json_output=False)
    return config


def _parse_environment(value: str | None) -> Environment | None:
    if value is None:
        return None
    try:
        return Environment(value.lower())
    except ValueError:
        choices = ", ".join(e.value for e in Environment)
        _exit_with_error(f"Unknown environment '{value}'. Choose from: {choices}")
    return None


def _default_actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _build_orchestrator(
    config: OrchestratorConfig, approve: bool | None, dry_run: bool = False
) -> DeploymentOrchestrator:
    if dry_run:
        config.deploy.dry_run = True
    if approve is None:
        approvals: Any = ConsoleApprovalGate()
    else:
        approvals = StaticApprovalGate(approved=approve, approver=_default_actor())
    try:
        collaborators = build_collaborators(config, approvals=approvals)
    except PipelineError as exc:
        _exit_with_error(exc)
    return DeploymentOrchestrator(config, collaborators)


async def _run_with_shutdown(orchestrator: DeploymentOrchestrator, run_id: str, coro_factory: Any) -> DeploymentRecord:
    shutdown = GracefulShutdown()
    shutdown.install()
    shutdown.set_run(orchestrator, run_id)
    try:
        return await coro_factory()
    finally:
        shutdown.uninstall()


def _finish(record: DeploymentRecord, summary_path: Path | None) -> None:
    print_environment_table(record)
    for result in record.gate_results.values():
        print_gate_result(result)
    print_final_summary(record)
    if summary_path is not None:
        summary_path.parent.mkdir(parents=True, exist_ok=True)
        summary_path.write_text(generate_run_summary(record), encoding="utf-8")
    if record.state not in (STATE_SUCCEEDED, STATE_ROLLED_BACK):
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version and exit."),
    ] = None,
) -> None:
    """Release orchestrator."""


@app.command()
def init(
    output_dir: Annotated[Path, typer.Option("--output-dir", "-o", help="Project directory")] = Path("."),
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite existing config.yaml")] = False,
) -> None:
    """Create a default config.yaml and the state directory."""
    output_dir.mkdir(parents=True, exist_ok=True)
    config_path = output_dir / "config.yaml"
    if config_path.exists() and not force:
        typer.secho(f"{config_path} already exists. Use --force to overwrite.", fg=typer.colors.YELLOW)
    else:
        config_path.write_text(_DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
        typer.secho(f"Wrote {config_path}", fg=typer.colors.GREEN)

    state_dir = output_dir / OrchestratorConfig().state_dir
    state_dir.mkdir(parents=True, exist_ok=True)
    typer.echo(f"State directory: {state_dir}")


@app.command()
def plan(
    ref: Annotated[str, typer.Argument(help="Branch or tag name")],
    kind: Annotated[RefKind, typer.Option("--kind", "-k", help="Ref kind")] = RefKind.BRANCH,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Manual environment override")] = None,
    sha: Annotated[Optional[str], typer.Option("--sha", help="Commit SHA (resolved from git when omitted)")] = None,
    config_path: Annotated[Optional[Path], typer.Option("--config", "-c", help="Config file")] = None,
) -> None:
    """Show which environments and versions a ref would deploy."""
    config = _load_config(config_path)
    environment = _parse_environment(env)
    try:
        request = DeploymentRequest(
            ref=ref,
            ref_kind=kind,
            actor=_default_actor(),
            environment_override=environment,
            trigger=TriggerSource.MANUAL if environment else TriggerSource.PUSH,
            sha=sha,
        )
        orchestrator = _build_orchestrator(config, approve=False, dry_run=True)
        run_plan = asyncio.run(orchestrator.plan(request))
    except PipelineError as exc:
        _exit_with_error(exc)
    print_plan(run_plan.targets, run_plan.versions, run_plan.sha)


@app.command()
def gate(
    scope: Annotated[Scope, typer.Option("--scope", "-s", help="Gate scope")] = Scope.PRODUCTION,
    report_out: Annotated[Optional[Path], typer.Option("--report", "-r", help="Write a Markdown report")] = None,
    config_path: Annotated[Optional[Path], typer.Option("--config", "-c", help="Config file")] = None,
) -> None:
    """Evaluate the security gate from the configured scan reports."""
    config = _load_config(config_path)
    orchestrator = _build_orchestrator(config, approve=False, dry_run=True)
    request = DeploymentRequest(ref="HEAD", ref_kind=RefKind.BRANCH, actor=_default_actor())
    try:
        scan, results = asyncio.run(orchestrator.evaluate_gate(request, (scope,)))
    except PipelineError as exc:
        _exit_with_error(exc)

    for result in results:
        print_gate_result(result)
    if report_out is not None:
        report_out.parent.mkdir(parents=True, exist_ok=True)
        report_out.write_text(generate_gate_report(results, scan), encoding="utf-8")
        typer.echo(f"Report written to {report_out}")
    if not all(result.passed for result in results):
        raise typer.Exit(code=1)


@app.command()
def deploy(
    ref: Annotated[str, typer.Argument(help="Branch or tag name")],
    kind: Annotated[RefKind, typer.Option("--kind", "-k", help="Ref kind")] = RefKind.BRANCH,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Manual environment override")] = None,
    force_version: Annotated[
        Optional[str], typer.Option("--force-version", help="Explicit production version")
    ] = None,
    emergency: Annotated[bool, typer.Option("--emergency", help="Emergency deployment")] = False,
    sha: Annotated[Optional[str], typer.Option("--sha", help="Commit SHA")] = None,
    actor: Annotated[Optional[str], typer.Option("--actor", help="Requesting user")] = None,
    approve: Annotated[
        Optional[bool],
        typer.Option("--approve/--deny", help="Answer approval requests without prompting"),
    ] = None,
    reason: Annotated[str, typer.Option("--reason", help="Free-text reason")] = "",
    summary: Annotated[Optional[Path], typer.Option("--summary", help="Write a Markdown run summary")] = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Simulate deployments without shipping anything")
    ] = False,
    config_path: Annotated[Optional[Path], typer.Option("--config", "-c", help="Config file")] = None,
) -> None:
    """Run a full deployment for a ref."""
    config = _load_config(config_path)
    environment = _parse_environment(env)
    try:
        request = DeploymentRequest(
            ref=ref,
            ref_kind=kind,
            actor=actor or _default_actor(),
            environment_override=environment,
            force_version=force_version,
            emergency=emergency,
            trigger=TriggerSource.MANUAL if environment else TriggerSource.PUSH,
            sha=sha,
            reason=reason,
        )
    except PipelineError as exc:
        _exit_with_error(exc)

    orchestrator = _build_orchestrator(config, approve, dry_run=dry_run)
    run_id = new_run_id()
    record = asyncio.run(
        _run_with_shutdown(orchestrator, run_id, lambda: orchestrator.run(request, run_id=run_id))
    )
    print_run_header(record)
    _finish(record, summary)


@app.command()
def rollback(
    env: Annotated[str, typer.Argument(help="Environment to roll back")],
    run_id: Annotated[Optional[str], typer.Option("--run-id", help="Redeploy the version from this run")] = None,
    to_version: Annotated[Optional[str], typer.Option("--to-version", help="Redeploy this version")] = None,
    actor: Annotated[Optional[str], typer.Option("--actor", help="Requesting user")] = None,
    reason: Annotated[str, typer.Option("--reason", help="Why the rollback is needed")] = "",
    summary: Annotated[Optional[Path], typer.Option("--summary", help="Write a Markdown run summary")] = None,
    config_path: Annotated[Optional[Path], typer.Option("--config", "-c", help="Config file")] = None,
) -> None:
    """Redeploy a previously deployed version to one environment."""
    config = _load_config(config_path)
    environment = _parse_environment(env)
    if run_id and to_version:
        _exit_with_error("Use either --run-id or --to-version, not both")

    request = RollbackRequest(
        environment=environment,
        actor=actor or _default_actor(),
        reason=reason,
        target_run_id=run_id,
        target_version=to_version,
    )
    orchestrator = _build_orchestrator(config, approve=True)
    new_id = new_run_id()
    record = asyncio.run(
        _run_with_shutdown(orchestrator, new_id, lambda: orchestrator.rollback(request, run_id=new_id))
    )
    print_run_header(record)
    _finish(record, summary)


@app.command()
def status(
    run_id: Annotated[Optional[str], typer.Argument(help="Run id (defaults to the last run)")] = None,
    clear: Annotated[
        bool, typer.Option("--clear", help="Delete all run records, history and events")
    ] = False,
    config_path: Annotated[Optional[Path], typer.Option("--config", "-c", help="Config file")] = None,
) -> None:
    """Show the state of a deployment run, or clear all stored runs."""
    config = _load_config(config_path)
    if clear:
        DeploymentRecord.clear(config.state_dir)
        typer.secho(f"Cleared {config.state_dir}", fg=typer.colors.GREEN)
        return
    record = DeploymentRecord.load(run_id, config.state_dir)
    if record is None:
        _exit_with_error(f"No deployment record found{' for ' + run_id if run_id else ''}")
    print_run_header(record)
    print_environment_table(record)
    print_final_summary(record)


@app.command()
def history(
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Filter by environment")] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows")] = 20,
    config_path: Annotated[Optional[Path], typer.Option("--config", "-c", help="Config file")] = None,
) -> None:
    """List recent deployments, newest first."""
    config = _load_config(config_path)
    environment = _parse_environment(env)
    store = DeploymentHistory(
        Path(config.state_dir) / HISTORY_FILE, max_rollback_depth=config.max_rollback_depth
    )
    entries = store.entries
    if environment is not None:
        entries = [e for e in entries if e.environment == environment.value]
    print_history_table(entries[:limit])


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port")] = 8080,
    config_path: Annotated[Optional[Path], typer.Option("--config", "-c", help="Config file")] = None,
) -> None:
    """Start the HTTP deployment gateway."""
    import uvicorn

    if config_path is not None:
        os.environ["RELEASE_CONFIG_PATH"] = str(config_path)
    uvicorn.run("src.deploy_gateway.main:app", host=host, port=port)


if __name__ == "__main__":
    app()
