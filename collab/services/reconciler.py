"""Periodic repair of payment and escrow state.

The reconciler never touches balances itself: confirmed payments are
replayed through the same capture path the webhook uses (which refunds
payments for cancelled orders), and stale holds are closed with the
engine's ``auto_release`` action.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from collab.core.config import settings
from collab.core.errors import FlowError
from collab.models.payment import PaymentOrder
from collab.services import escrow
from collab.services.flow_engine import auto_release, capture_payment
from collab.services.gateway.client import RazorpayClient, get_gateway

logger = logging.getLogger(__name__)


async def find_unverified_orders(
    db: AsyncSession, now: datetime | None = None, limit: int = 100,
) -> list[str]:
    """Orders to check at the gateway.

    Open orders past the reconcile delay, plus recently cancelled orders
    that have not seen a payment yet.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.reconcile_after_minutes)
    watch_from = now - timedelta(hours=settings.failed_order_watch_hours)
    result = await db.execute(
        select(PaymentOrder.external_order_id)
        .where(
            PaymentOrder.created_at < cutoff,
            or_(
                PaymentOrder.status == "created",
                and_(
                    PaymentOrder.status == "failed",
                    PaymentOrder.external_payment_id.is_(None),
                    PaymentOrder.created_at >= watch_from,
                ),
            ),
        )
        .order_by(PaymentOrder.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def reconcile_payments(
    db: AsyncSession,
    now: datetime | None = None,
    gateway: RazorpayClient | None = None,
) -> int:
    """Replay captures for orders the gateway reports as paid; returns new captures."""
    gateway = gateway or get_gateway()
    captured = 0
    for order_id in await find_unverified_orders(db, now):
        try:
            remote = await gateway.fetch_order(order_id)
            if remote.get("status") != "paid":
                continue
            payments = await gateway.fetch_order_payments(order_id)
            payment = next((p for p in payments if p.get("status") == "captured"), None)
            if payment is None:
                logger.warning("Order %s is paid but has no captured payment", order_id)
                continue
            _, already = await capture_payment(
                db, order_id, payment["id"], via="reconciler", amount_paise=payment.get("amount"),
            )
            if not already:
                captured += 1
                logger.info("Reconciled payment %s for order %s", payment["id"], order_id)
        except FlowError as exc:
            logger.warning("Could not reconcile order %s: %s", order_id, exc)
    return captured


async def release_stale_escrow(db: AsyncSession, now: datetime | None = None) -> int:
    """Auto-release holds past the quiescence window; returns holds released."""
    stale = await escrow.find_stale(db, now)
    conversation_ids = [hold.conversation_id for hold in stale]
    released = 0
    for conversation_id in conversation_ids:
        try:
            await auto_release(db, conversation_id)
            released += 1
        except FlowError as exc:
            logger.warning("Auto-release failed for conversation %s: %s", conversation_id, exc)
    return released
