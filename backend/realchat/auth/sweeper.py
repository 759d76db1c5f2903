"""Periodic cleanup of expired refresh tokens and pending registrations.

The sweep itself is synchronous storage work, so each pass runs in a worker
thread to keep the event loop free for WebSocket traffic.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .service import AuthService

logger = logging.getLogger(__name__)


class TokenSweeper:
    """Background task that calls ``AuthService.sweep`` on an interval."""

    def __init__(self, auth: AuthService, interval_seconds: float = 600) -> None:
        self._auth = auth
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("[Sweeper] Started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[Sweeper] Stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.sweep_once()

    async def sweep_once(self) -> None:
        """Run one sweep pass off the event loop."""
        await asyncio.to_thread(self._auth.sweep)
