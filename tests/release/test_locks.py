"""Tests for RefLockRegistry."""

from __future__ import annotations

import asyncio

import pytest

from src.release_orchestrator.locks import RefLockRegistry


class TestRefLocks:
    @pytest.mark.asyncio
    async def test_same_ref_is_serialised(self):
        locks = RefLockRegistry()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("main"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_refs_run_concurrently(self):
        locks = RefLockRegistry()
        inside = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("main"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def other() -> None:
            async with locks.hold("release/1.0.0"):
                inside.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.asyncio
    async def test_locks_released_after_use(self):
        locks = RefLockRegistry()
        async with locks.hold("main"):
            assert locks.is_locked("main")
            assert len(locks) == 1
        assert not locks.is_locked("main")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = RefLockRegistry()
        with pytest.raises(RuntimeError):
            async with locks.hold("main"):
                raise RuntimeError("boom")
        assert len(locks) == 0
