"""Shared constants for the release orchestrator."""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Run states (names used by the state machine and persisted records)
# ---------------------------------------------------------------------------
STATE_PENDING = "pending"
STATE_VERSION_RESOLVED = "version_resolved"
STATE_SCANNING = "scanning"
STATE_GATE_EVALUATED = "gate_evaluated"
STATE_RISK_ASSESSED = "risk_assessed"
STATE_AWAITING_APPROVAL = "awaiting_approval"
STATE_DEPLOYING = "deploying"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"
STATE_BLOCKED = "blocked"
STATE_ROLLED_BACK = "rolled_back"
STATE_CANCELLED = "cancelled"

TERMINAL_STATES = frozenset(
    {
        STATE_SUCCEEDED,
        STATE_FAILED,
        STATE_BLOCKED,
        STATE_ROLLED_BACK,
        STATE_CANCELLED,
    }
)

# ---------------------------------------------------------------------------
# Version formats
# ---------------------------------------------------------------------------
PRERELEASE_IDENTIFIERS = ("rc", "pre", "alpha", "beta", "hotfix")

# v{uint}.{uint}.{uint} optionally suffixed -{identifier}.{uint}
VERSION_PATTERN = re.compile(
    r"^v(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-(" + "|".join(PRERELEASE_IDENTIFIERS) + r")\.(0|[1-9]\d*))?$"
)

# Generated pre-release versions carry a short SHA instead of a counter.
GENERATED_PRERELEASE_PATTERN = re.compile(
    r"^v(\d+)\.(\d+)\.(\d+)-pre\.([0-9a-f]{7})$"
)

SHA_TIMESTAMP_PATTERN = re.compile(r"^[a-z-]+-[0-9a-f]{7}-\d{8}-\d{4}$")

RELEASE_BRANCH_PATTERN = re.compile(r"^release/(\d+)\.(\d+)\.(\d+)$")

SHORT_SHA_LENGTH = 7
SHA_TIMESTAMP_FORMAT = "%Y%m%d-%H%M"
SEED_VERSION = "v0.0.0"

# ---------------------------------------------------------------------------
# Environment presentation
# ---------------------------------------------------------------------------
ENVIRONMENT_PREFIXES: dict[str, str] = {
    "development": "dev",
    "staging": "staging",
    "pre-production": "preprod",
    "production": "prod",
}

ENVIRONMENT_DISPLAY_NAMES: dict[str, str] = {
    "development": "Development",
    "staging": "Staging",
    "pre-production": "Pre-Production",
    "production": "Production",
}

# ---------------------------------------------------------------------------
# Scanning defaults
# ---------------------------------------------------------------------------
DEFAULT_SCAN_TIMEOUT = 600  # seconds per tool
DEFAULT_PASS_THRESHOLD = 50
DEFAULT_MAX_ROLLBACK_DEPTH = 5

# ---------------------------------------------------------------------------
# State persistence
# ---------------------------------------------------------------------------
STATE_DIR = ".release-orchestrator"
RECORDS_DIR = "runs"
HISTORY_FILE = "DEPLOYMENT_HISTORY.json"
LAST_RUN_FILE = "LAST_RUN.json"
EVENTS_FILE = "events.jsonl"
