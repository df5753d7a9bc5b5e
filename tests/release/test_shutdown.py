"""Tests for GracefulShutdown."""

from __future__ import annotations

import asyncio
import signal
import sys
from unittest.mock import MagicMock, patch

import pytest

from src.release_orchestrator.shutdown import GracefulShutdown


class TestGracefulShutdown:
    def test_signal_cancels_active_run(self):
        orchestrator = MagicMock()
        orchestrator.cancel.return_value = True
        shutdown = GracefulShutdown()
        shutdown.set_run(orchestrator, "run-1")

        shutdown._signal_handler(signal.SIGINT, None)

        assert shutdown.should_stop
        orchestrator.cancel.assert_called_once_with("run-1")

    def test_no_run_registered(self):
        shutdown = GracefulShutdown()
        shutdown._async_handler()
        assert shutdown.should_stop

    def test_reentrant_signal_ignored(self):
        orchestrator = MagicMock()
        shutdown = GracefulShutdown()
        shutdown.set_run(orchestrator, "run-1")
        shutdown._handling = True

        shutdown._async_handler()

        orchestrator.cancel.assert_not_called()
        assert not shutdown.should_stop

    def test_install_without_loop_uses_signal_module(self):
        shutdown = GracefulShutdown()
        with patch("src.release_orchestrator.shutdown.signal.signal") as mock_signal, patch(
            "src.release_orchestrator.shutdown.sys.platform", "linux"
        ):
            shutdown.install()
        registered = {call.args[0] for call in mock_signal.call_args_list}
        assert registered == {signal.SIGINT, signal.SIGTERM}

    def test_uninstall_restores_signal_module_handlers(self):
        shutdown = GracefulShutdown()
        previous = object()
        with patch(
            "src.release_orchestrator.shutdown.signal.signal", return_value=previous
        ) as mock_signal, patch("src.release_orchestrator.shutdown.sys.platform", "linux"):
            shutdown.install()
            mock_signal.reset_mock()
            shutdown.uninstall()
            shutdown.uninstall()

        restored = {call.args for call in mock_signal.call_args_list}
        assert restored == {(signal.SIGINT, previous), (signal.SIGTERM, previous)}

    @pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers are Unix only")
    @pytest.mark.asyncio
    async def test_uninstall_removes_loop_handlers(self):
        loop = asyncio.get_running_loop()
        shutdown = GracefulShutdown()
        shutdown.install()
        shutdown.uninstall()

        assert not loop.remove_signal_handler(signal.SIGINT)
        assert not loop.remove_signal_handler(signal.SIGTERM)

    @pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers are Unix only")
    @pytest.mark.asyncio
    async def test_repeated_runs_do_not_leak_handlers(self):
        loop = asyncio.get_running_loop()
        with patch.object(loop, "add_signal_handler") as add, patch.object(
            loop, "remove_signal_handler"
        ) as remove:
            for _ in range(3):
                shutdown = GracefulShutdown()
                shutdown.install()
                shutdown.uninstall()

        assert add.call_count == remove.call_count == 6
