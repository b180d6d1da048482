import logging

from collab.workers import celery_app, worker_loop
from collab.db.session import async_session_factory

logger = logging.getLogger(__name__)


@celery_app.task(name="deliver_push", bind=True, max_retries=3, default_retry_delay=60)
def deliver_push(self, user_id: int, title: str, body: str, data: dict | None = None) -> int:
    """On-demand task: push one notification to every active device of a user."""
    from collab.realtime.push import dispatcher

    async def _run() -> int:
        async with async_session_factory() as db:
            try:
                count = await dispatcher.deliver(db, user_id, title, body, data)
                logger.info("Delivered push to %d device(s) of user %d", count, user_id)
                return count
            finally:
                await db.close()

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("deliver_push failed for user %d", user_id)
        raise self.retry(exc=exc)


@celery_app.task(name="purge_expired_notifications", bind=True, max_retries=3, default_retry_delay=60)
def purge_expired_notifications(self) -> int:
    """Periodic task: delete notifications past their expiry."""
    from collab.services.notification import purge_expired

    async def _run() -> int:
        async with async_session_factory() as db:
            try:
                count = await purge_expired(db)
                logger.info("Purged %d expired notifications", count)
                return count
            finally:
                await db.close()

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("purge_expired_notifications failed")
        raise self.retry(exc=exc)
