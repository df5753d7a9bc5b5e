"""Tests for the rich display helpers."""

from __future__ import annotations

import io

from rich.console import Console

import src.release_orchestrator.display as display_mod
from src.release_orchestrator.display import (
    print_environment_table,
    print_error_panel,
    print_final_summary,
    print_gate_result,
    print_history_table,
    print_plan,
    print_run_header,
)
from src.release_orchestrator.history import HistoryEntry
from src.release_orchestrator.state import DeploymentRecord
from src.release_shared.models import (
    ApprovalDecision,
    DeploymentRequest,
    Environment,
    EnvironmentStatus,
    ErrorKind,
    GateResult,
    GateViolation,
    RefKind,
    ReleaseType,
    ResolvedVersion,
    RiskAssessment,
    RiskLevel,
    Scope,
    VersionScheme,
)


def _capture_output(fn, *args, **kwargs) -> str:
    """Capture Rich console output by temporarily replacing the console."""
    buf = io.StringIO()
    original = display_mod._console
    display_mod._console = Console(file=buf, force_terminal=False, width=160)
    try:
        fn(*args, **kwargs)
    finally:
        display_mod._console = original
    return buf.getvalue()


def _make_record() -> DeploymentRecord:
    request = DeploymentRequest(ref="v2.0.0", ref_kind=RefKind.TAG, actor="alice", emergency=True)
    record = DeploymentRecord(request=request, run_id="run-42")
    env = Environment.PRE_PRODUCTION
    record.set_targets((env,), {env: ResolvedVersion(env, "v2.0.0", VersionScheme.SEMANTIC)})
    record.update_environment(env, EnvironmentStatus.SUCCEEDED, url="https://preprod.example.com")
    record.risk_assessment = RiskAssessment(ReleaseType.MAJOR, RiskLevel.CRITICAL, False, "v2.0.0", "v1.9.3")
    record.approval = ApprovalDecision(approved=True, approver="bob")
    return record


class TestRunOutput:
    def test_header(self):
        out = _capture_output(print_run_header, _make_record())
        assert "run-42" in out
        assert "tag v2.0.0" in out
        assert "alice" in out
        assert "EMERGENCY" in out

    def test_environment_table(self):
        out = _capture_output(print_environment_table, _make_record())
        assert "Pre-Production" in out
        assert "SUCCEEDED" in out
        assert "https://preprod.example.com" in out

    def test_final_summary(self):
        record = _make_record()
        record.mark_state("succeeded")
        out = _capture_output(print_final_summary, record)
        assert "SUCCEEDED" in out
        assert "major / critical" in out
        assert "approved by bob" in out

    def test_final_summary_with_error(self):
        record = _make_record()
        record.fail(ErrorKind.APPROVAL_DENIED, "denied by bob")
        record.mark_state("blocked")
        out = _capture_output(print_final_summary, record)
        assert "BLOCKED" in out
        assert "approval_denied" in out

    def test_error_panel(self):
        out = _capture_output(print_error_panel, ValueError("bad config"))
        assert "bad config" in out
        assert "Error" in out


class TestPlanAndGate:
    def test_plan(self):
        env = Environment.PRE_PRODUCTION
        versions = {env: ResolvedVersion(env, "v1.4.0", VersionScheme.SEMANTIC, tag_to_create="v1.4.0")}
        out = _capture_output(print_plan, (env,), versions, sha="abcdef1234")
        assert "Deployment Plan" in out
        assert "v1.4.0" in out
        assert "semantic" in out
        assert "abcdef1" in out

    def test_empty_plan(self):
        out = _capture_output(print_plan, (), {})
        assert "Nothing to deploy" in out

    def test_gate_result(self):
        result = GateResult(
            scope=Scope.PRODUCTION,
            score=70,
            passed=False,
            violations=(GateViolation("critical_vulnerabilities", 30, True, "1 critical", unknown=True),),
        )
        out = _capture_output(print_gate_result, result)
        assert "BLOCKED" in out
        assert "critical_vulnerabilities" in out
        assert "-30" in out
        assert "unknown" in out

    def test_gate_result_without_violations(self):
        result = GateResult(scope=Scope.NON_PRODUCTION, score=100, passed=True)
        out = _capture_output(print_gate_result, result)
        assert "PASSED" in out
        assert "No violations" in out


class TestHistoryTable:
    def test_entries(self):
        entries = [
            HistoryEntry("r2", "production", "v1.0.0", "succeeded", actor="bob", rollback_of="r1"),
            HistoryEntry("r1", "production", "v1.1.0", "failed"),
        ]
        out = _capture_output(print_history_table, entries)
        assert "rollback of r1" in out
        assert "FAILED" in out

    def test_accepts_dicts(self):
        out = _capture_output(
            print_history_table,
            [{"run_id": "r9", "environment": "staging", "version": "x", "status": "succeeded"}],
        )
        assert "Staging" in out
        assert "r9" in out
