"""Deployment history used for rollbacks and released-tag detection.

Each terminal run appends one entry per environment it touched.  The file
keeps at most ``max_rollback_depth`` entries per environment.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from src.release_orchestrator.state import DeploymentRecord
from src.release_shared.constants import DEFAULT_MAX_ROLLBACK_DEPTH, HISTORY_FILE, STATE_DIR
from src.release_shared.models import Environment, EnvironmentStatus
from src.release_shared.utils import atomic_write_json, load_json

logger = logging.getLogger(__name__)


@dataclass
class HistoryEntry:
    """One environment outcome of a finished run."""

    run_id: str
    environment: str
    version: str
    status: str
    ref: str = ""
    sha: str = ""
    actor: str = ""
    url: str = ""
    finished_at: str = ""
    rollback_of: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == EnvironmentStatus.SUCCEEDED.value


class DeploymentHistory:
    """JSON-file backed history of environment deployments.

    Entries are stored newest first.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        max_rollback_depth: int = DEFAULT_MAX_ROLLBACK_DEPTH,
    ) -> None:
        self._path = Path(path) if path else Path(STATE_DIR) / HISTORY_FILE
        self._max_entries = max_rollback_depth * len(Environment)
        self._entries: list[HistoryEntry] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def entries(self) -> list[HistoryEntry]:
        return list(self._entries)

    def _load(self) -> list[HistoryEntry]:
        data = load_json(self._path)
        if not isinstance(data, dict):
            return []
        known = set(HistoryEntry.__dataclass_fields__)
        entries: list[HistoryEntry] = []
        for raw in data.get("deployments", []):
            try:
                entries.append(HistoryEntry(**{k: v for k, v in raw.items() if k in known}))
            except TypeError:
                logger.warning("Skipping malformed history entry: %r", raw)
        return entries

    def save(self) -> None:
        atomic_write_json(self._path, {"deployments": [asdict(e) for e in self._entries]})

    def record(self, record: DeploymentRecord) -> list[HistoryEntry]:
        """Add every attempted environment of *record* and persist.

        Returns:
            The entries that were added.
        """
        added: list[HistoryEntry] = []
        for key, outcome in record.environments.items():
            if outcome.status in (EnvironmentStatus.PENDING, EnvironmentStatus.SKIPPED):
                continue
            added.append(
                HistoryEntry(
                    run_id=record.run_id,
                    environment=key,
                    version=outcome.version,
                    status=outcome.status.value,
                    ref=record.request.ref,
                    sha=record.sha,
                    actor=record.request.actor,
                    url=outcome.url,
                    finished_at=outcome.finished_at,
                    rollback_of=record.rollback_of,
                )
            )
        if not added:
            return added
        # newest first, so reverse to keep the environment order of the run
        self._entries[:0] = list(reversed(added))
        del self._entries[self._max_entries:]
        self.save()
        logger.info("Recorded %d history entries for run %s", len(added), record.run_id)
        return added

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _successes(self, environment: Environment) -> list[HistoryEntry]:
        return [
            e for e in self._entries if e.environment == environment.value and e.succeeded
        ]

    def succeeded(self, version: str, environment: Environment) -> bool:
        """Whether *version* was ever deployed successfully to *environment*."""
        return any(e.version == version for e in self._successes(environment))

    def current(self, environment: Environment) -> HistoryEntry | None:
        successes = self._successes(environment)
        return successes[0] if successes else None

    def previous(self, environment: Environment) -> HistoryEntry | None:
        """The latest successful deployment with a version differing from current."""
        successes = self._successes(environment)
        if not successes:
            return None
        current_version = successes[0].version
        for entry in successes[1:]:
            if entry.version != current_version:
                return entry
        return None

    def find(self, environment: Environment, version: str) -> HistoryEntry | None:
        for entry in self._successes(environment):
            if entry.version == version:
                return entry
        return None

    def get(self, run_id: str, environment: Environment | None = None) -> HistoryEntry | None:
        for entry in self._entries:
            if entry.run_id != run_id:
                continue
            if environment is None or entry.environment == environment.value:
                return entry
        return None

    def to_list(self) -> list[dict[str, Any]]:
        return [asdict(e) for e in self._entries]
