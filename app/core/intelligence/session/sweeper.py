"""Background eviction of idle sessions."""

import asyncio
import logging
from typing import Optional

from .manager import SessionManager

logger = logging.getLogger(__name__)


class SessionSweeper:
    """
    Periodically evicts expired sessions.

    Owned by the application lifespan: start() on startup, stop() on
    shutdown. Both are idempotent.
    """

    def __init__(self, manager: SessionManager, interval_seconds: float = 60.0):
        if interval_seconds <= 0:
            raise ValueError("Sweep interval must be positive")
        self._manager = manager
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="session-sweeper")
        logger.info(f"Session sweeper started (every {self._interval:.0f}s)")

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("Session sweeper stopped")

    async def sweep_once(self) -> int:
        """Run a single sweep, logging instead of raising on failure."""
        try:
            return await self._manager.sweep_expired()
        except Exception as e:
            logger.error(f"Session sweep failed: {e}")
            return 0

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.sweep_once()
