"""
In-process expiry timers for active reservations.

Timers are volatile: they are rebuilt from durable expiry timestamps on startup
(``rearm``) and the reconciliation sweep resolves anything a lost timer missed.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, Optional

from seathold.metrics import ARMED_TIMERS

logger = logging.getLogger(__name__)

ExpireHandler = Callable[[str], Awaitable[object]]


class ExpiryScheduler:
    """One asyncio task per reservation that calls the expire handler with the reservation id only."""

    def __init__(self, handler: Optional[ExpireHandler] = None):
        self._handler = handler
        self._timers: Dict[str, asyncio.Task] = {}

    def bind(self, handler: ExpireHandler):
        self._handler = handler

    def arm(self, reservation_id: str, ttl_seconds: float):
        """Schedule the expire handler at now + ttl; re-arming replaces any existing timer."""
        self.cancel(reservation_id)
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._fire_after(reservation_id, max(0.0, float(ttl_seconds))))
        self._timers[reservation_id] = task
        ARMED_TIMERS.set(len(self._timers))
        logger.debug("Armed expiry timer for %s in %.1fs", reservation_id, ttl_seconds)

    def cancel(self, reservation_id: str) -> bool:
        """Cancel a pending timer. Canceling a fired, canceled or unknown timer is a no-op."""
        task = self._timers.pop(reservation_id, None)
        ARMED_TIMERS.set(len(self._timers))
        if task is None or task.done() or task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def is_armed(self, reservation_id: str) -> bool:
        task = self._timers.get(reservation_id)
        return task is not None and not task.done()

    def pending(self) -> int:
        return len(self._timers)

    def rearm(self, reservations: Iterable, now: datetime) -> int:
        """Recreate timers from ``expires_at``; already overdue holds fire immediately."""
        count = 0
        for reservation in reservations:
            remaining = (reservation.expires_at - now).total_seconds()
            self.arm(reservation.id, remaining)
            count += 1
        if count:
            logger.info("Re-armed %d reservation timers", count)
        return count

    async def shutdown(self):
        tasks = list(self._timers.values())
        self._timers.clear()
        ARMED_TIMERS.set(0)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _fire_after(self, reservation_id: str, delay: float):
        await asyncio.sleep(delay)
        # drop our own handle first so a cancel() from the handler is a no-op
        if self._timers.get(reservation_id) is asyncio.current_task():
            del self._timers[reservation_id]
            ARMED_TIMERS.set(len(self._timers))
        if self._handler is None:
            logger.warning("Expiry timer fired for %s with no handler bound", reservation_id)
            return
        try:
            await self._handler(reservation_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            # the reconciliation sweep picks the reservation up again
            logger.exception("Expiry handler failed for reservation %s", reservation_id)
