"""
Per-generation write locks
"""
import asyncio
import logging
from typing import Dict
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class GenerationLocks:
    """
    Serializes read-modify-write cycles on one Generation row.

    Slot results of a running job, API state changes (generate, reset,
    retry) and progress updates all go through the same lock, so concurrent
    slot completions never overwrite each other. A lock lives only while
    somebody holds or waits for it.
    """
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._registry_lock = asyncio.Lock()
        self._acquired_total = 0
        self._peak_waiters = 0

    @asynccontextmanager
    async def acquire(self, generation_id: str):
        """Wait for exclusive write access to a generation"""
        async with self._registry_lock:
            lock = self._locks.setdefault(generation_id, asyncio.Lock())
            self._holders[generation_id] = self._holders.get(generation_id, 0) + 1
            self._peak_waiters = max(self._peak_waiters, self._holders[generation_id])

        try:
            async with lock:
                self._acquired_total += 1
                yield
        finally:
            async with self._registry_lock:
                remaining = self._holders[generation_id] - 1
                if remaining:
                    self._holders[generation_id] = remaining
                else:
                    del self._holders[generation_id]
                    del self._locks[generation_id]

    def get_stats(self) -> Dict:
        """Get lock manager statistics for monitoring"""
        return {
            "active_locks": len(self._locks),
            "waiting": sum(self._holders.values()),
            "acquired_total": self._acquired_total,
            "peak_waiters": self._peak_waiters,
        }
