"""
Concurrency control for job scheduling.

Control-surface mutations (enable, disable, delete) and the run-state write of
a completing execution must not interleave for the same job. ``KeyedLock``
hands out one ``asyncio.Lock`` per job id and drops it once nobody holds or
waits on it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """Mutual exclusion keyed by an arbitrary string (a job id)"""

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Usage:
            async with keyed_lock.acquire(job_id):
                ...
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def held_keys(self) -> List[str]:
        return [key for key, entry in self._entries.items() if entry.lock.locked()]

    def __len__(self) -> int:
        return len(self._entries)
