import logging

from collab.workers import celery_app, worker_loop
from collab.db.session import async_session_factory

logger = logging.getLogger(__name__)


@celery_app.task(name="reconcile_payments", bind=True, max_retries=3, default_retry_delay=60)
def reconcile_payments(self) -> int:
    """Periodic task: replay captures for payment orders left unverified."""
    from collab.services.reconciler import reconcile_payments as _reconcile

    async def _run() -> int:
        async with async_session_factory() as db:
            try:
                count = await _reconcile(db)
                logger.info("Reconciled %d payment orders", count)
                return count
            finally:
                await db.close()

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("reconcile_payments failed")
        raise self.retry(exc=exc)


@celery_app.task(name="release_stale_escrow", bind=True, max_retries=3, default_retry_delay=60)
def release_stale_escrow(self) -> int:
    """Periodic task: auto-release escrow holds past the quiescence window."""
    from collab.services.reconciler import release_stale_escrow as _release

    async def _run() -> int:
        async with async_session_factory() as db:
            try:
                count = await _release(db)
                logger.info("Auto-released %d escrow holds", count)
                return count
            finally:
                await db.close()

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("release_stale_escrow failed")
        raise self.retry(exc=exc)
