"""
Per-key asyncio locks - serialises in-process work on one key (a rate scope)
without a global lock across unrelated keys. Hold them around local state
only, never across a network call.

Lock entries are reference counted and dropped when no task holds or waits on
them, so the registry does not grow with every key ever seen.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout."""
    pass


class KeyedLocks:
    """
    Usage:
        locks = KeyedLocks("rate")
        async with locks.hold(scope_id):
            # mutate per-scope state
    """

    def __init__(self, name: str = "keyed") -> None:
        self.name = name
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str, wait: Optional[float] = None):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._refs[key] = self._refs.get(key, 0) + 1

        acquired = False
        try:
            if wait is None:
                await lock.acquire()
            else:
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=wait)
                except asyncio.TimeoutError:
                    logger.warning("Lock acquisition timed out: %s:%s", self.name, key)
                    raise LockTimeoutError(f"Could not acquire {self.name} lock within {wait}s")
            acquired = True
            yield
        finally:
            if acquired:
                lock.release()
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
