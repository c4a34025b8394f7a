"""
Per-project mutation locks.

Dependency edges are validated against a snapshot of the project graph and
then committed. Two requests racing through check-then-commit on the same
project could each pass the cycle check and jointly create a cycle, so the
whole sequence runs under the project's lock. Within one process this is an
``asyncio.Lock``; across processes the service also takes a row lock on the
project (``SELECT ... FOR UPDATE``).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class ProjectLockRegistry:
    """Lazily created asyncio locks keyed by project id."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, project_id: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        self._waiters[project_id] = self._waiters.get(project_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[project_id] -= 1
            if self._waiters[project_id] == 0:
                # Last holder gone.
                del self._waiters[project_id]
                self._locks.pop(project_id, None)

    def __len__(self) -> int:
        return len(self._locks)


project_locks = ProjectLockRegistry()
