"""Per-workspace serialization of lifecycle transitions."""

from __future__ import annotations

import asyncio


class WorkspaceLocks:
    """One asyncio lock per workspace id.

    Lifecycle transitions hold the lock. File operations don't take it; they
    call ``wait_idle`` so they never run against a container that is being
    torn down or rebuilt.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, workspace_id: str) -> asyncio.Lock:
        """Get or create the lock for a workspace."""
        if workspace_id not in self._locks:
            self._locks[workspace_id] = asyncio.Lock()
        return self._locks[workspace_id]

    def is_busy(self, workspace_id: str) -> bool:
        lock = self._locks.get(workspace_id)
        return lock is not None and lock.locked()

    async def wait_idle(self, workspace_id: str) -> None:
        """Block until no transition holds the workspace's lock."""
        lock = self._locks.get(workspace_id)
        if lock is not None and lock.locked():
            async with lock:
                pass

    def discard(self, workspace_id: str) -> None:
        lock = self._locks.get(workspace_id)
        if lock is not None and not lock.locked():
            del self._locks[workspace_id]
