"""Per-ref mutual exclusion for tag listing and tag creation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class RefLockRegistry:
    """Hands out one :class:`asyncio.Lock` per ref.

    Runs for different refs proceed concurrently; runs for the same ref
    serialise version resolution so two runs never create the same tag.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def lock_for(self, ref: str) -> asyncio.Lock:
        lock = self._locks.get(ref)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[ref] = lock
        return lock

    def is_locked(self, ref: str) -> bool:
        lock = self._locks.get(ref)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, ref: str) -> AsyncIterator[None]:
        """Hold the lock for *ref*, dropping it once nobody else waits."""
        lock = self.lock_for(ref)
        self._waiters[ref] = self._waiters.get(ref, 0) + 1
        try:
            async with lock:
                logger.debug("Acquired ref lock for %s", ref)
                yield
        finally:
            self._waiters[ref] -= 1
            if self._waiters[ref] == 0:
                del self._waiters[ref]
                self._locks.pop(ref, None)

    def __len__(self) -> int:
        return len(self._locks)
