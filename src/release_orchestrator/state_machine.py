"""Deployment run state machine using the ``transitions`` library.

Defines 12 states and the guarded transitions between them.  Terminal
states have no outgoing transitions.
"""

from __future__ import annotations

import logging
from typing import Any

from transitions.extensions.asyncio import AsyncMachine, AsyncState

from src.release_shared.constants import (
    STATE_AWAITING_APPROVAL,
    STATE_BLOCKED,
    STATE_CANCELLED,
    STATE_DEPLOYING,
    STATE_FAILED,
    STATE_GATE_EVALUATED,
    STATE_PENDING,
    STATE_RISK_ASSESSED,
    STATE_ROLLED_BACK,
    STATE_SCANNING,
    STATE_SUCCEEDED,
    STATE_VERSION_RESOLVED,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------
STATES: list[AsyncState] = [
    AsyncState(STATE_PENDING),
    AsyncState(STATE_VERSION_RESOLVED),
    AsyncState(STATE_SCANNING),
    AsyncState(STATE_GATE_EVALUATED),
    AsyncState(STATE_RISK_ASSESSED),
    AsyncState(STATE_AWAITING_APPROVAL),
    AsyncState(STATE_DEPLOYING),
    AsyncState(STATE_SUCCEEDED),
    AsyncState(STATE_FAILED),
    AsyncState(STATE_BLOCKED),
    AsyncState(STATE_ROLLED_BACK),
    AsyncState(STATE_CANCELLED),
]

ACTIVE_STATES: list[str] = [
    STATE_PENDING,
    STATE_VERSION_RESOLVED,
    STATE_SCANNING,
    STATE_GATE_EVALUATED,
    STATE_RISK_ASSESSED,
    STATE_AWAITING_APPROVAL,
    STATE_DEPLOYING,
]

# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
TRANSITIONS: list[dict[str, Any]] = [
    {
        "trigger": "versions_resolved",
        "source": STATE_PENDING,
        "dest": STATE_VERSION_RESOLVED,
        "conditions": ["has_resolved_versions"],
    },
    {
        "trigger": "start_scanning",
        "source": STATE_VERSION_RESOLVED,
        "dest": STATE_SCANNING,
        "conditions": ["has_targets"],
    },
    {
        "trigger": "nothing_to_deploy",
        "source": STATE_VERSION_RESOLVED,
        "dest": STATE_SUCCEEDED,
        "conditions": ["has_no_targets"],
    },
    {
        "trigger": "start_rollback",
        "source": STATE_VERSION_RESOLVED,
        "dest": STATE_DEPLOYING,
        "conditions": ["is_rollback", "has_artifact"],
    },
    {
        "trigger": "gate_evaluated",
        "source": STATE_SCANNING,
        "dest": STATE_GATE_EVALUATED,
        "conditions": ["has_gate_results"],
    },
    {
        "trigger": "risk_assessed",
        "source": STATE_GATE_EVALUATED,
        "dest": STATE_RISK_ASSESSED,
        "conditions": ["has_risk_assessment"],
    },
    {
        "trigger": "await_approval",
        "source": STATE_RISK_ASSESSED,
        "dest": STATE_AWAITING_APPROVAL,
        "conditions": ["approval_required"],
    },
    {
        "trigger": "start_deploying",
        "source": [STATE_GATE_EVALUATED, STATE_RISK_ASSESSED],
        "dest": STATE_DEPLOYING,
        "conditions": ["any_scope_passed"],
        "unless": ["approval_required"],
    },
    {
        "trigger": "approved",
        "source": STATE_AWAITING_APPROVAL,
        "dest": STATE_DEPLOYING,
        "conditions": ["is_approved"],
    },
    {
        "trigger": "deployments_succeeded",
        "source": STATE_DEPLOYING,
        "dest": STATE_SUCCEEDED,
        "conditions": ["all_deployments_succeeded"],
        "unless": ["is_rollback"],
    },
    {
        "trigger": "rollback_succeeded",
        "source": STATE_DEPLOYING,
        "dest": STATE_ROLLED_BACK,
        "conditions": ["is_rollback", "all_deployments_succeeded"],
    },
    {
        "trigger": "block",
        "source": ACTIVE_STATES,
        "dest": STATE_BLOCKED,
    },
    {
        "trigger": "fail",
        "source": ACTIVE_STATES,
        "dest": STATE_FAILED,
    },
    {
        "trigger": "cancel",
        "source": ACTIVE_STATES,
        "dest": STATE_CANCELLED,
    },
]


def create_deployment_machine(
    model: Any, initial_state: str = STATE_PENDING
) -> AsyncMachine:
    """Create and return an ``AsyncMachine`` bound to *model*.

    The model object must implement the guard methods referenced in
    ``TRANSITIONS`` (e.g. ``has_targets``, ``is_approved``, ...).
    These are expected to be simple boolean-returning methods.

    Args:
        model: The object whose state the machine manages.
        initial_state: The initial state for the machine.

    Returns:
        Configured ``AsyncMachine`` instance.
    """
    machine = AsyncMachine(
        model=model,
        states=STATES,
        transitions=TRANSITIONS,
        initial=initial_state,
        auto_transitions=False,
        send_event=True,
        queued=True,
        ignore_invalid_triggers=True,
    )
    return machine
