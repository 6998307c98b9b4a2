"""Per-entity mutual exclusion for mutating engine operations.

Turn-taking, single-claim and settle-once rules are compare-and-set in
nature, so every mutation on one engagement, job or escrow id runs while
holding that entity's lock. Locks are created on demand and dropped when
no task holds or waits on them.
"""

import asyncio
from contextlib import asynccontextmanager


class EntityLocks:
    """Registry of ``asyncio.Lock`` objects keyed by ``(kind, entity_id)``."""

    def __init__(self):
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, kind: str, entity_id: str):
        key = (kind, entity_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_held(self, kind: str, entity_id: str) -> bool:
        lock = self._locks.get((kind, entity_id))
        return lock is not None and lock.locked()


# Process-wide registry shared by every service instance
entity_locks = EntityLocks()
