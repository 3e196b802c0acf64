"""
Periodic expiry of abandoned connection requests.

The sweeper runs on its own schedule and goes through the engine, so an
expiry never interleaves with an accept or a new request for the same party.
"""

import asyncio
from datetime import timedelta
from typing import List, Optional

from loguru import logger

from .models import ConnectionRequest
from .router import RoutingEngine
from .utils import guarded


class ExpirySweeper:
    """Background task expiring requests older than ``max_age``."""

    def __init__(self, engine: RoutingEngine, max_age: timedelta, interval_seconds: float = 60.0):
        self.engine = engine
        self.max_age = max_age
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> List[ConnectionRequest]:
        expired = await self.engine.expire_requests(self.max_age)
        if expired:
            logger.info("Expiry sweep completed", expired_count=len(expired))
        return expired

    async def _worker(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            # A failed sweep is logged and the next one still runs
            await guarded(self.run_once, default=[], name="expiry_sweep")

    def start(self) -> None:
        """Start the sweep loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._worker())
        logger.info(
            "Expiry sweeper started",
            max_age_seconds=self.max_age.total_seconds(),
            interval_seconds=self.interval_seconds
        )

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")
