"""Payment orders, client verification, webhook ingress and admin capture.

Every confirmed payment, whatever its source, ends in
:func:`collab.services.flow_engine.capture_payment`, which is idempotent
on the external payment id.
"""

import json
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from collab.core.config import settings
from collab.core.errors import ErrorKind, FlowError
from collab.models.conversation import Conversation
from collab.models.payment import PaymentOrder
from collab.models.user import User
from collab.services.audit import log_audit
from collab.services.conversation import get_for_party
from collab.services.gateway.client import (
    get_gateway,
    make_receipt,
    verify_payment_signature,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

CAPTURE_EVENTS = ("payment.captured", "order.paid")


async def get_order_by_external(db: AsyncSession, external_order_id: str) -> PaymentOrder:
    result = await db.execute(
        select(PaymentOrder).where(PaymentOrder.external_order_id == external_order_id)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise FlowError(ErrorKind.NOT_FOUND, "Payment order not found")
    return order


async def get_latest_order(db: AsyncSession, conversation_id: int) -> PaymentOrder | None:
    result = await db.execute(
        select(PaymentOrder)
        .where(PaymentOrder.conversation_id == conversation_id)
        .order_by(PaymentOrder.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_or_create_order(db: AsyncSession, conversation: Conversation) -> PaymentOrder:
    """Return the open order for the agreed amount, creating it at the gateway once."""
    agreed = conversation.flow_data.get("agreed_amount")
    if not agreed:
        raise FlowError(ErrorKind.INVALID_INPUT, "No price has been agreed yet")
    amount_paise = int(agreed) * 100

    result = await db.execute(
        select(PaymentOrder)
        .where(
            PaymentOrder.conversation_id == conversation.id,
            PaymentOrder.amount_paise == amount_paise,
            PaymentOrder.status.in_(("created", "verified")),
        )
        .order_by(PaymentOrder.id.desc())
        .limit(1)
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        return existing

    receipt = make_receipt(conversation.id)
    notes = {
        "conversation_id": conversation.id,
        "conversation_type": (
            "campaign" if conversation.campaign_id
            else "bid" if conversation.bid_id
            else "direct"
        ),
        "brand_owner_id": conversation.brand_owner_id,
        "influencer_id": conversation.influencer_id,
    }
    remote = await get_gateway().create_order(amount_paise, settings.currency, receipt, notes)

    order = PaymentOrder(
        conversation_id=conversation.id,
        payer_id=conversation.brand_owner_id,
        amount_paise=amount_paise,
        currency=settings.currency,
        status="created",
        external_order_id=remote["id"],
        meta={"receipt": remote.get("receipt", receipt), **notes},
    )
    db.add(order)
    await db.flush()
    logger.info(
        "Payment order %s created for conversation %s (%d paise)",
        order.external_order_id, conversation.id, amount_paise,
    )
    return order


async def create_checkout(db: AsyncSession, conversation_id: int, user: User) -> PaymentOrder:
    """Start payment for a conversation; repeated calls return the same order."""
    from collab.services.flow_engine import perform_action

    await get_for_party(db, conversation_id, user)
    result = await perform_action(db, conversation_id, user, "proceed_to_payment")
    return await get_order_by_external(db, result["payment_order"]["external_order_id"])


async def verify_client_payment(
    db: AsyncSession, order_id: str, payment_id: str, signature: str, user: User,
) -> tuple[PaymentOrder, bool]:
    """Checkout callback from the client; the webhook may have won already."""
    from collab.services.flow_engine import capture_payment

    if not verify_payment_signature(order_id, payment_id, signature):
        logger.warning("Bad checkout signature for order %s", order_id)
        raise FlowError(ErrorKind.BAD_SIGNATURE, "Payment signature verification failed")

    order = await get_order_by_external(db, order_id)
    if order.payer_id != user.id and not user.is_admin:
        await get_for_party(db, order.conversation_id, user)
    return await capture_payment(db, order_id, payment_id, via="client")


async def handle_webhook(db: AsyncSession, body: bytes, signature: str | None) -> dict:
    """Gateway callback. Unknown events and orders are acknowledged and ignored."""
    from collab.services.flow_engine import capture_payment

    if not verify_webhook_signature(body, signature):
        logger.warning("Rejected webhook with bad signature")
        raise FlowError(ErrorKind.BAD_SIGNATURE, "Webhook signature verification failed")

    try:
        event = json.loads(body)
    except ValueError:
        raise FlowError(ErrorKind.INVALID_INPUT, "Webhook body is not JSON")

    name = event.get("event")
    if name not in CAPTURE_EVENTS:
        logger.info("Ignoring webhook event %s", name)
        return {"status": "ignored", "event": name}

    entity = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
    order_id = entity.get("order_id")
    payment_id = entity.get("id")
    if not order_id or not payment_id:
        logger.warning("Webhook %s without order/payment id", name)
        return {"status": "ignored", "event": name}

    result = await db.execute(
        select(PaymentOrder).where(PaymentOrder.external_order_id == order_id)
    )
    if result.scalar_one_or_none() is None:
        logger.info("Webhook for unknown order %s", order_id)
        return {"status": "ignored", "event": name}

    _, already = await capture_payment(
        db, order_id, payment_id, via="webhook", amount_paise=entity.get("amount"),
    )
    return {"status": "duplicate" if already else "processed", "event": name}


async def admin_capture(
    db: AsyncSession, order_id: str, payment_id: str, admin: User,
) -> tuple[PaymentOrder, bool]:
    """Manual capture by an admin, cross-checked with the gateway when configured."""
    from collab.services.flow_engine import capture_payment

    if not admin.is_admin:
        raise FlowError(ErrorKind.NOT_AUTHORIZED, "Admin access required")
    await get_order_by_external(db, order_id)

    if settings.gateway_configured:
        remote = await get_gateway().fetch_payment(payment_id)
        if remote.get("order_id") != order_id or remote.get("status") not in (
            "captured", "authorized",
        ):
            raise FlowError(
                ErrorKind.INVALID_INPUT,
                "Gateway does not report this payment as captured for the order",
            )

    order, already = await capture_payment(db, order_id, payment_id, via="admin", admin=admin)
    await log_audit(
        db,
        action="admin_payment_capture",
        entity_type="payment_order",
        entity_id=order.id,
        user_id=admin.id,
        details={"order_id": order_id, "payment_id": payment_id, "already": already},
    )
    await db.commit()
    return order, already
