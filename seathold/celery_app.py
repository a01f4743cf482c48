from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from seathold.config import settings
from seathold.logging_setup import setup_logging


celery_app = Celery(
    "seathold_tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["seathold.reconciliation.tasks"],
)

celery_app.conf.update(task_track_started=True)

celery_app.conf.beat_schedule = {
    "sweep-expired-reservations": {
        "task": "seathold.reconciliation.tasks.sweep_expired_task",
        "schedule": float(settings.SWEEP_INTERVAL_SECONDS),
    },
    "purge-resolved-reservations": {
        "task": "seathold.reconciliation.tasks.purge_resolved_task",
        "schedule": 60 * 60.0,
    },
    "repair-permanent-bookings": {
        "task": "seathold.reconciliation.tasks.repair_permanent_bookings_task",
        "schedule": 6 * 60 * 60.0,
    },
}


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    # same JSON lines as the API; connecting here stops Celery from installing its own handlers
    setup_logging(settings.LOG_LEVEL, service="seathold-worker")
