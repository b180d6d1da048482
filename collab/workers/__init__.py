import asyncio

from celery import Celery
from celery.schedules import crontab

from collab.core.config import settings

_loop = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """Return a shared event loop for all Celery worker tasks.

    All async tasks must use the same loop to avoid 'Future attached to
    a different loop' errors caused by the shared asyncpg connection pool.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


celery_app = Celery(
    "collab_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "reconcile-payments-5m": {
            "task": "reconcile_payments",
            "schedule": crontab(minute="*/5"),
        },
        "release-stale-escrow-hourly": {
            "task": "release_stale_escrow",
            "schedule": crontab(minute=0, hour="*"),
        },
        "purge-expired-notifications-daily": {
            "task": "purge_expired_notifications",
            "schedule": crontab(minute=15, hour=3),
        },
    },
)

# Import tasks so they are registered with the celery app
import collab.workers.reconcile  # noqa: F401, E402
import collab.workers.push  # noqa: F401, E402
