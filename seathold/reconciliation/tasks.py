import asyncio

from celery.utils.log import get_task_logger
from sqlalchemy import pool

from seathold.celery_app import celery_app
from seathold.db.session import make_engine, make_session_factory
from seathold.services.reservation_manager import ReservationManager

logger = get_task_logger(__name__)


def _run_with_manager(job):
    """Run ``job(manager)`` on a fresh event loop with its own engine; worker processes share no loop with the API."""
    async def _do():
        engine = make_engine(poolclass=pool.NullPool)
        try:
            manager = ReservationManager(make_session_factory(engine))
            return await job(manager)
        finally:
            await engine.dispose()

    return asyncio.run(_do())


@celery_app.task(bind=True, autoretry_for=(Exception,), retry_backoff=True, retry_backoff_max=300, max_retries=3)
def sweep_expired_task(self, grace_seconds: int = None):
    recovered = _run_with_manager(lambda m: m.sweep_expired(grace_seconds))
    if recovered:
        logger.info("Sweep recovered %d overdue reservations", recovered)
    return recovered


@celery_app.task(bind=True, autoretry_for=(Exception,), retry_backoff=True, max_retries=3)
def purge_resolved_task(self, retention_seconds: int = None):
    purged = _run_with_manager(lambda m: m.purge_resolved(retention_seconds))
    logger.info("Purged %d resolved reservations", purged)
    return purged


@celery_app.task(bind=True)
def repair_permanent_bookings_task(self):
    stats = _run_with_manager(lambda m: m.repair_permanent_bookings())
    if stats["conflicts"]:
        logger.error("Permanent booking repair found %d conflicts: %s", stats["conflicts"], stats["errors"])
    return stats
