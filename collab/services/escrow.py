"""Escrow holds: named slices of a wallet's frozen balance.

A hold is opened with the captured payment, which lands in the holder's
frozen balance. It ends in exactly one of two ways:

* release - funds become available to the holder.
* refund  - funds leave the holder's wallet and are credited to the payer.

Like the ledger, nothing here commits.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from collab.core.config import settings
from collab.core.errors import ErrorKind, FlowError
from collab.models.conversation import Conversation
from collab.models.escrow import EscrowHold
from collab.services import ledger

logger = logging.getLogger(__name__)

AUTO_RELEASE_REASON = "auto_release_timeout"


async def get_held(db: AsyncSession, conversation_id: int) -> EscrowHold | None:
    result = await db.execute(
        select(EscrowHold).where(
            EscrowHold.conversation_id == conversation_id,
            EscrowHold.status == "held",
        )
    )
    return result.scalar_one_or_none()


async def get_latest(db: AsyncSession, conversation_id: int) -> EscrowHold | None:
    result = await db.execute(
        select(EscrowHold)
        .where(EscrowHold.conversation_id == conversation_id)
        .order_by(EscrowHold.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_payment(db: AsyncSession, external_payment_id: str) -> EscrowHold | None:
    result = await db.execute(
        select(EscrowHold).where(EscrowHold.external_payment_id == external_payment_id)
    )
    return result.scalar_one_or_none()


async def create(
    db: AsyncSession,
    conversation_id: int,
    user_id: int,
    amount_paise: int,
    reason: str,
    *,
    external_payment_id: str | None = None,
    deposit: bool = False,
) -> EscrowHold:
    """Open a hold on ``user_id``'s wallet.

    With ``deposit`` the amount arrives with the payment and is credited
    straight into the hold; otherwise it is frozen from available funds.
    """
    existing = await get_held(db, conversation_id)
    if existing is not None:
        raise FlowError(
            ErrorKind.DUPLICATE,
            "Conversation already has funds in escrow",
            resource={"escrow_hold_id": existing.id},
        )

    hold = EscrowHold(
        conversation_id=conversation_id,
        user_id=user_id,
        amount_paise=amount_paise,
        status="held",
        reason=reason,
        external_payment_id=external_payment_id,
    )
    db.add(hold)
    await db.flush()

    if deposit:
        await ledger.deposit_frozen(
            db, user_id, amount_paise,
            hold_id=hold.id,
            conversation_id=conversation_id,
            external_payment_id=external_payment_id,
        )
    else:
        await ledger.freeze(
            db, user_id, amount_paise, hold_id=hold.id, conversation_id=conversation_id,
        )
    logger.info(
        "Escrow hold %s opened: conversation=%s amount=%d",
        hold.id, conversation_id, amount_paise,
    )
    return hold


async def release(db: AsyncSession, hold: EscrowHold, reason: str) -> EscrowHold:
    """Unfreeze a hold for its holder. Releasing twice is a no-op."""
    if hold.status == "released":
        return hold
    if hold.status != "held":
        raise FlowError(ErrorKind.INVALID_INPUT, f"Escrow hold is already {hold.status}")

    await ledger.release(
        db,
        hold.user_id,
        hold.amount_paise,
        hold_id=hold.id,
        conversation_id=hold.conversation_id,
        stage="release",
    )
    hold.status = "released"
    hold.release_reason = reason
    hold.released_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Escrow hold %s released (%s)", hold.id, reason)
    return hold


async def refund(
    db: AsyncSession, hold: EscrowHold, reason: str, *, refund_to: int,
) -> EscrowHold:
    """Return a hold's funds to the payer. Refunding twice is a no-op."""
    if hold.status == "refunded":
        return hold
    if hold.status != "held":
        raise FlowError(ErrorKind.INVALID_INPUT, f"Escrow hold is already {hold.status}")

    await ledger.refund_frozen(
        db,
        hold.user_id,
        hold.amount_paise,
        hold_id=hold.id,
        conversation_id=hold.conversation_id,
    )
    await ledger.credit(
        db,
        refund_to,
        hold.amount_paise,
        stage="refund",
        escrow_hold_id=hold.id,
        external_payment_id=hold.external_payment_id,
        note=reason,
    )
    hold.status = "refunded"
    hold.release_reason = reason
    hold.released_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Escrow hold %s refunded to user %s (%s)", hold.id, refund_to, reason)
    return hold


async def find_stale(
    db: AsyncSession, now: datetime | None = None, limit: int = 100,
) -> list[EscrowHold]:
    """Held holds with no hold or flow movement inside the quiescence window."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=settings.escrow_quiescence_days)
    result = await db.execute(
        select(EscrowHold)
        .join(Conversation, Conversation.id == EscrowHold.conversation_id)
        .where(
            EscrowHold.status == "held",
            EscrowHold.created_at < cutoff,
            Conversation.last_transition_at < cutoff,
        )
        .order_by(EscrowHold.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def total_held(db: AsyncSession, user_id: int) -> int:
    holds = await db.execute(
        select(EscrowHold.amount_paise).where(
            EscrowHold.user_id == user_id, EscrowHold.status == "held",
        )
    )
    return sum(holds.scalars().all())
