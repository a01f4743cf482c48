"""
Background sweep that expires overdue holds and purges old tombstones.

Runs inside the API process next to the in-process timers; the Celery tasks in
``seathold.reconciliation.tasks`` run the same sweep out of process.
"""
import asyncio
import logging
from typing import Optional

from seathold.config import settings
from seathold.metrics import SWEEP_ERRORS

logger = logging.getLogger(__name__)


class ReconciliationSweeper:
    def __init__(self, manager, interval_seconds: Optional[int] = None, grace_seconds: Optional[int] = None):
        self.manager = manager
        self.interval = settings.SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self.grace = settings.SWEEP_GRACE_SECONDS if grace_seconds is None else grace_seconds
        self.running = False
        self.task = None

    async def start(self):
        if self.running:
            logger.warning("Reconciliation sweeper already running")
            return
        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info("Reconciliation sweeper started (interval: %ss, grace: %ss)", self.interval, self.grace)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        logger.info("Reconciliation sweeper stopped")

    async def run_once(self) -> int:
        recovered = await self.manager.sweep_expired(self.grace)
        await self.manager.purge_resolved()
        return recovered

    async def _run(self):
        while self.running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                SWEEP_ERRORS.inc()
                logger.exception("Error in reconciliation sweep")
            await asyncio.sleep(self.interval)
