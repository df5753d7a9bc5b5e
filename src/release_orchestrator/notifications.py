"""Notification sinks for deployment events.

Sinks never raise: delivery problems are logged and the run continues.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

import httpx

from src.release_orchestrator.config import NotificationConfig, OrchestratorConfig
from src.release_shared.models import DeploymentEvent
from src.release_shared.protocols import NotificationSink
from src.release_shared.utils import append_jsonl

logger = logging.getLogger(__name__)


class LoggingSink:
    """Writes each event to the ``src.release_orchestrator.events`` logger."""

    def __init__(self, logger_name: str = "src.release_orchestrator.events") -> None:
        self._logger = logging.getLogger(logger_name)

    async def publish(self, event: DeploymentEvent) -> None:
        self._logger.info(
            "run=%s state=%s env=%s version=%s outcome=%s score=%s risk=%s %s",
            event.run_id,
            event.state,
            event.environment or "-",
            event.version or "-",
            event.outcome or "-",
            event.gate_score if event.gate_score is not None else "-",
            event.risk_level or "-",
            event.message,
        )


class JsonlFileSink:
    """Appends each event as one JSON line."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def publish(self, event: DeploymentEvent) -> None:
        try:
            append_jsonl(self._path, event.to_dict())
        except OSError as exc:
            logger.warning("Failed to append event to %s: %s", self._path, exc)


class WebhookSink:
    """POSTs each event as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def publish(self, event: DeploymentEvent) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(self._url, json=event.to_dict())
                if resp.status_code >= 400:
                    logger.warning(
                        "Webhook %s rejected event for run %s: HTTP %d",
                        self._url,
                        event.run_id,
                        resp.status_code,
                    )
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery to %s failed: %s", self._url, exc)


class MemorySink:
    """Keeps events in memory; used by the gateway and by tests."""

    def __init__(self) -> None:
        self.events: list[DeploymentEvent] = []

    async def publish(self, event: DeploymentEvent) -> None:
        self.events.append(event)

    def states(self, run_id: str | None = None) -> list[str]:
        return [e.state for e in self.events if run_id is None or e.run_id == run_id]


class CompositeSink:
    """Fans each event out to several sinks in order."""

    def __init__(self, sinks: Iterable[NotificationSink]) -> None:
        self._sinks = list(sinks)

    @property
    def sinks(self) -> list[NotificationSink]:
        return list(self._sinks)

    async def publish(self, event: DeploymentEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.publish(event)
            except Exception:
                logger.exception("Notification sink %s failed", type(sink).__name__)


def build_sink(
    config: OrchestratorConfig, extra: Iterable[NotificationSink] = ()
) -> CompositeSink:
    """Build the sink stack described by *config*."""
    notifications: NotificationConfig = config.notifications
    sinks: list[NotificationSink] = []
    if notifications.log_events:
        sinks.append(LoggingSink())
    sinks.append(JsonlFileSink(config.events_path))
    if notifications.webhook_url:
        sinks.append(WebhookSink(notifications.webhook_url, notifications.webhook_timeout))
    sinks.extend(extra)
    return CompositeSink(sinks)
