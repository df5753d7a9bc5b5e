"""Graceful shutdown handler for deployment runs.

Handles both Windows (``signal.signal``) and Unix
(``loop.add_signal_handler``) signal registration with a reentrancy guard.
A signal requests cancellation of the active run; the orchestrator then
stops at its next safe point and seals the record as cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.release_orchestrator.pipeline import DeploymentOrchestrator

logger = logging.getLogger(__name__)


class GracefulShutdown:
    """Manages graceful shutdown on SIGINT / SIGTERM.

    Usage::

        shutdown = GracefulShutdown()
        shutdown.install()
        shutdown.set_run(orchestrator, run_id)
        ...
        shutdown.uninstall()
    """

    def __init__(self) -> None:
        self._should_stop = False
        self._orchestrator: DeploymentOrchestrator | None = None
        self._run_id: str = ""
        self._handling = False  # reentrancy guard
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous: dict[int, Any] = {}

    @property
    def should_stop(self) -> bool:
        """Whether a shutdown signal has been received."""
        return self._should_stop

    def set_run(self, orchestrator: Any, run_id: str) -> None:
        """Inject the orchestrator and run to cancel on shutdown.

        Args:
            orchestrator: A ``DeploymentOrchestrator`` (or duck-typed
                object with ``cancel(run_id)``).
            run_id: Id of the active run.
        """
        self._orchestrator = orchestrator
        self._run_id = run_id

    def install(self) -> None:
        """Register signal handlers for SIGINT and SIGTERM.

        On Windows, uses ``signal.signal`` directly.
        On Unix, uses ``loop.add_signal_handler`` if a running event loop
        is available, falling back to ``signal.signal``.
        """
        if sys.platform == "win32":
            self._install_signal_module()
        else:
            try:
                loop = asyncio.get_running_loop()
                self._loop = loop
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, self._async_handler)
            except RuntimeError:
                # No running loop -- fall back to signal.signal
                self._install_signal_module()

    def _install_signal_module(self) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous[sig] = signal.signal(sig, self._signal_handler)

    def uninstall(self) -> None:
        """Remove the handlers registered by :meth:`install`.  Idempotent."""
        if self._loop is not None:
            for sig in (signal.SIGINT, signal.SIGTERM):
                self._loop.remove_signal_handler(sig)
            self._loop = None
        for sig, previous in self._previous.items():
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()

    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Synchronous signal handler (Windows / fallback)."""
        if self._handling:
            return  # reentrancy guard
        self._handling = True
        logger.warning("Received signal %s -- cancelling active run", signum)
        self._should_stop = True
        self._request_cancel()
        self._handling = False

    def _async_handler(self) -> None:
        """Async-compatible signal handler (Unix)."""
        if self._handling:
            return  # reentrancy guard
        self._handling = True
        logger.warning("Received shutdown signal -- cancelling active run")
        self._should_stop = True
        self._request_cancel()
        self._handling = False

    def _request_cancel(self) -> None:
        if self._orchestrator is None or not self._run_id:
            logger.warning("No active run to cancel during shutdown")
            return
        if not self._orchestrator.cancel(self._run_id):
            logger.info("Run %s already finished", self._run_id)
