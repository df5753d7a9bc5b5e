"""Rich-based terminal display layer for deployment runs.

Provides formatted output for run headers, target plans, gate results,
per-environment outcomes, history tables, error panels, and final
summaries.  Uses a module-level :class:`~rich.console.Console` singleton
for consistent output.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from src.release_shared.constants import ENVIRONMENT_DISPLAY_NAMES

# ---------------------------------------------------------------------------
# Module-level Console singleton
# ---------------------------------------------------------------------------

_console = Console()

_STATE_STYLES: dict[str, str] = {
    "succeeded": "green",
    "rolled_back": "green",
    "failed": "red",
    "blocked": "red",
    "cancelled": "yellow",
}

_ENV_STATUS_STYLES: dict[str, str] = {
    "succeeded": "green",
    "failed": "red",
    "blocked": "red",
    "skipped": "dim",
    "pending": "yellow",
}


# ---------------------------------------------------------------------------
# Display functions
# ---------------------------------------------------------------------------


def print_run_header(record: Any) -> None:
    """Print a panel identifying the run and its request.

    Parameters
    ----------
    record:
        A ``DeploymentRecord`` (or duck-typed object with ``run_id`` and
        ``request``).
    """
    request = _get_attr(record, "request")
    header = Text()
    header.append("Release Orchestrator\n", style="bold white")
    header.append("Run: ", style="bold")
    header.append(f"{_get_attr(record, 'run_id', 'unknown')}\n", style="cyan")
    if request is not None:
        header.append("Ref: ", style="bold")
        header.append(f"{_value(_get_attr(request, 'ref_kind', ''))} {_get_attr(request, 'ref', '')}\n", style="green")
        header.append("Actor: ", style="bold")
        header.append(f"{_get_attr(request, 'actor', '') or '-'}", style="white")
        if _get_attr(request, "emergency", False):
            header.append("\nEMERGENCY", style="bold red")

    _console.print(
        Panel(header, title="[bold]Deployment Run[/bold]", border_style="blue", expand=False)
    )


def print_plan(targets: Any, versions: dict[Any, Any], sha: str = "") -> None:
    """Print the environments and versions a request would deploy."""
    table = Table(title="Deployment Plan", show_header=True, header_style="bold magenta")
    table.add_column("Environment", style="cyan", min_width=16)
    table.add_column("Version", min_width=28)
    table.add_column("Scheme", justify="center")
    table.add_column("Tag to create", justify="center")

    if not targets:
        _console.print("[yellow]Nothing to deploy for this ref.[/yellow]")
        return

    for env in targets:
        resolved = versions.get(env)
        table.add_row(
            _env_name(env),
            _get_attr(resolved, "raw", "—"),
            _value(_get_attr(resolved, "scheme", "")),
            _get_attr(resolved, "tag_to_create", None) or "—",
        )
    if sha:
        table.caption = f"commit {sha[:7]}"
    _console.print(table)


def print_gate_result(result: Any) -> None:
    """Print a gate result with its violations in rule order."""
    passed = _get_attr(result, "passed", False)
    score = _get_attr(result, "score", 0)
    scope = _value(_get_attr(result, "scope", ""))
    threshold = _get_attr(result, "pass_threshold", 50)

    style = "green" if passed else "red"
    verdict = "PASSED" if passed else "BLOCKED"
    table = Table(
        title=f"Security Gate ({scope}): [{style}]{verdict}[/{style}] score {score}/100 (threshold {threshold})",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Rule", style="cyan", min_width=26)
    table.add_column("Deduction", justify="right")
    table.add_column("Severity", justify="center")
    table.add_column("Message")

    violations = _get_attr(result, "violations", ()) or ()
    for violation in violations:
        blocking = _get_attr(violation, "blocking", False)
        unknown = _get_attr(violation, "unknown", False)
        severity = "[red]BLOCKING[/red]" if blocking else "[yellow]WARNING[/yellow]"
        if unknown:
            severity += " [dim](unknown)[/dim]"
        table.add_row(
            _get_attr(violation, "rule", ""),
            f"-{_get_attr(violation, 'deduction', 0)}",
            severity,
            _get_attr(violation, "message", ""),
        )
    if not violations:
        table.add_row("—", "0", "[green]OK[/green]", "No violations")
    _console.print(table)


def print_environment_table(record: Any) -> None:
    """Print per-environment outcomes of a run."""
    table = Table(title="Environments", show_header=True, header_style="bold magenta")
    table.add_column("Environment", style="cyan", min_width=16)
    table.add_column("Version", min_width=28)
    table.add_column("Status", justify="center")
    table.add_column("URL / Error")

    environments = _get_attr(record, "environments", {}) or {}
    for key, outcome in environments.items():
        status = _value(_get_attr(outcome, "status", "pending"))
        style = _ENV_STATUS_STYLES.get(status, "white")
        detail = _get_attr(outcome, "url", "") or _get_attr(outcome, "error", "") or "—"
        table.add_row(
            ENVIRONMENT_DISPLAY_NAMES.get(key, key),
            _get_attr(outcome, "version", "") or "—",
            f"[{style}]{status.upper()}[/{style}]",
            detail,
        )
    _console.print(table)


def print_history_table(entries: list[Any]) -> None:
    """Print deployment history entries, newest first."""
    table = Table(title="Deployment History", show_header=True, header_style="bold magenta")
    table.add_column("Run", style="cyan")
    table.add_column("Environment")
    table.add_column("Version")
    table.add_column("Status", justify="center")
    table.add_column("Actor")
    table.add_column("Finished")

    for entry in entries:
        status = _get_attr(entry, "status", "")
        style = _ENV_STATUS_STYLES.get(status, "white")
        rollback_of = _get_attr(entry, "rollback_of", None)
        run = _get_attr(entry, "run_id", "")
        if rollback_of:
            run += f" (rollback of {rollback_of})"
        table.add_row(
            run,
            ENVIRONMENT_DISPLAY_NAMES.get(_get_attr(entry, "environment", ""), _get_attr(entry, "environment", "")),
            _get_attr(entry, "version", ""),
            f"[{style}]{status.upper()}[/{style}]",
            _get_attr(entry, "actor", "") or "—",
            _get_attr(entry, "finished_at", "") or "—",
        )
    if not entries:
        table.add_row("—", "—", "—", "—", "—", "—")
    _console.print(table)


def print_error_panel(error: str | Exception) -> None:
    """Print an error message inside a red panel."""
    _console.print(
        Panel(
            Text(str(error), style="bold red"),
            title="[bold red]Error[/bold red]",
            border_style="red",
            expand=False,
        )
    )


def print_final_summary(record: Any) -> None:
    """Print the terminal state, risk and outcome of a run."""
    state = _get_attr(record, "state", "unknown")
    style = _STATE_STYLES.get(state, "yellow")

    content = Text()
    content.append("Status: ", style="bold")
    content.append(f"{state.upper()}\n", style=f"bold {style}")
    content.append("Run: ", style="bold")
    content.append(f"{_get_attr(record, 'run_id', 'unknown')}\n", style="cyan")

    risk = _get_attr(record, "risk_assessment", None)
    if risk is not None:
        content.append("Risk: ", style="bold")
        content.append(
            f"{_value(_get_attr(risk, 'release_type', ''))} / {_value(_get_attr(risk, 'risk_level', ''))}",
            style="magenta",
        )
        previous = _get_attr(risk, "previous_version", None)
        content.append(f" (previous {previous or 'none'})\n", style="dim")

    approval = _get_attr(record, "approval", None)
    if approval is not None:
        content.append("Approval: ", style="bold")
        verdict = "approved" if _get_attr(approval, "approved", False) else "denied"
        content.append(f"{verdict} by {_get_attr(approval, 'approver', '') or 'unknown'}\n")

    rollback_of = _get_attr(record, "rollback_of", None)
    if rollback_of:
        content.append("Rollback of: ", style="bold")
        content.append(f"{rollback_of}\n", style="cyan")

    error_kind = _get_attr(record, "error_kind", None)
    message = _get_attr(record, "message", "")
    if error_kind is not None:
        content.append("Error: ", style="bold")
        content.append(f"{_value(error_kind)}\n", style="red")
    if message:
        content.append(message, style="dim")

    _console.print(
        Panel(content, title="[bold]Run Summary[/bold]", border_style=style, expand=False)
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_attr(obj: Any, name: str, default: Any = None) -> Any:
    """Get attribute from object or dict, with fallback to default."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _value(obj: Any) -> str:
    """Return ``obj.value`` for enums, ``str(obj)`` otherwise."""
    return str(getattr(obj, "value", obj))


def _env_name(env: Any) -> str:
    return ENVIRONMENT_DISPLAY_NAMES.get(_value(env), _value(env))
