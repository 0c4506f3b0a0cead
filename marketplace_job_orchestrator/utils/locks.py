"""
Per-job lock registry.

Every mutating operation on one job runs under that job's asyncio.Lock.
Locks are created on demand and discarded once no coroutine holds or awaits
them, so the registry stays proportional to the number of jobs being worked on.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLockManager:
    """Registry of reference-counted asyncio locks keyed by job id."""

    def __init__(self):
        self._entries: Dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        """Acquire the lock for ``key`` for the duration of the block."""
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry()
        entry.users += 1

        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def is_locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
