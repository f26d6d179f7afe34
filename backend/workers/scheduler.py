"""Background scheduler — periodic SLA breach sweep."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from backend.config import settings
from backend.database import async_session
from backend.api.incidents import get_incident_manager
from backend.incident_manager import IncidentManager

logger = logging.getLogger("incidentdesk.scheduler")


class BackgroundScheduler:
    """Asyncio-based scheduler running inside the FastAPI event loop.

    On each tick the incident manager flips the stored breach flag on overdue
    incidents and emits one ``sla_breached`` event per incident. Breach state is
    always computed on read as well, so the sweep only adds persistence and
    notifications.
    """

    def __init__(
        self,
        manager_factory: Callable[[], IncidentManager] = get_incident_manager,
        interval: int | None = None,
        session_factory=async_session,
    ) -> None:
        self.interval = interval or settings.sla_sweep_interval_seconds
        self._manager_factory = manager_factory
        self._session_factory = session_factory
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.last_swept = 0

    @property
    def running(self) -> bool:
        return self._running

    def _manager(self) -> IncidentManager:
        return self._manager_factory()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("SLA sweep started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("SLA sweep stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                if not self._running:
                    break
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in SLA sweep tick")
                await asyncio.sleep(10)  # back off on error

    async def tick(self) -> int:
        """Run one sweep; returns how many incidents were newly marked breached."""
        async with self._session_factory() as session:
            flipped = await self._manager().sweep_breaches(session)
        self.last_swept = len(flipped)
        if flipped:
            logger.info("Tick complete: %d incidents breached", len(flipped))
        else:
            logger.debug("Tick: no new breaches")
        return len(flipped)


scheduler = BackgroundScheduler()
