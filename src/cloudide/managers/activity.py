"""Workspace activity tracking and idle reclamation.

Activity is kept in process memory only; a restart forgets it and every
running workspace starts a fresh idle window.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog

from cloudide.config import settings

logger = structlog.get_logger()

ReclaimCallback = Callable[[str], Awaitable[None]]


class ActivityTracker:
    """Last interaction time per workspace."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._last_seen: dict[str, datetime] = {}

    def touch(self, workspace_id: str) -> None:
        self._last_seen[workspace_id] = self._clock()

    def forget(self, workspace_id: str) -> None:
        self._last_seen.pop(workspace_id, None)

    def last_seen(self, workspace_id: str) -> datetime | None:
        return self._last_seen.get(workspace_id)

    def idle_workspaces(self, idle_for: timedelta) -> list[str]:
        """Workspaces whose last interaction is older than ``idle_for``."""
        cutoff = self._clock() - idle_for
        return [wid for wid, seen in self._last_seen.items() if seen < cutoff]

    def __contains__(self, workspace_id: object) -> bool:
        return workspace_id in self._last_seen

    def __len__(self) -> int:
        return len(self._last_seen)


class IdleReaper:
    """Periodically reclaims workspaces that have been idle too long.

    The reclaim callback owns the actual teardown (save, then remove). A failed
    reclaim is logged and retried on the next sweep.
    """

    def __init__(
        self,
        tracker: ActivityTracker,
        reclaim: ReclaimCallback,
        idle_timeout: timedelta | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self._tracker = tracker
        self._reclaim = reclaim
        self._idle_timeout = idle_timeout or timedelta(minutes=settings.idle_timeout_minutes)
        self._interval = interval_seconds or settings.idle_sweep_interval
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Idle reaper already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Idle reaper started",
            idle_timeout_minutes=self._idle_timeout.total_seconds() / 60,
            interval_seconds=self._interval,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Idle reaper stopped")

    async def sweep(self) -> list[str]:
        """Reclaim every idle workspace once. Returns the ids reclaimed."""
        reclaimed = []
        for workspace_id in self._tracker.idle_workspaces(self._idle_timeout):
            try:
                await self._reclaim(workspace_id)
            except Exception:
                logger.exception("Failed to reclaim idle workspace", workspace_id=workspace_id)
                continue
            self._tracker.forget(workspace_id)
            reclaimed.append(workspace_id)

        if reclaimed:
            logger.info("Reclaimed idle workspaces", count=len(reclaimed))
        return reclaimed

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error in idle sweep loop")
            await asyncio.sleep(self._interval)
