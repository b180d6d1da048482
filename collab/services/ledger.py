"""Wallet ledger: balances as a cache over an append-only transaction log.

Functions here flush but never commit; the caller owns the unit of work
and must hold the wallet lock until it commits
(``collab.core.locks.wallet_locks``).

Every row moves the wallet total: credits add, debits subtract. Rows
tagged with a conversation are escrow rows and move the frozen balance
as well, so for any wallet

* total  = sum(credits) - sum(debits)
* frozen = sum(tagged credits) - sum(tagged debits)

and for any conversation the tagged rows net to the amount it holds.
A captured payment is a single tagged credit. Moving funds between the
available balance and a conversation (``freeze`` / ``release``) writes a
pair of legs sharing one stage: one untagged, one tagged, in opposite
directions.
"""

import logging
from typing import NamedTuple

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from collab.core.errors import ErrorKind, FlowError
from collab.core.locks import wallet_lock
from collab.models.wallet import Transaction, Wallet

logger = logging.getLogger(__name__)


class Balance(NamedTuple):
    total: int
    frozen: int

    @property
    def available(self) -> int:
        return self.total - self.frozen

    def as_dict(self) -> dict[str, int]:
        return {
            "total_paise": self.total,
            "frozen_paise": self.frozen,
            "available_paise": self.available,
        }


def _check_amount(amount_paise: int) -> None:
    if not isinstance(amount_paise, int) or isinstance(amount_paise, bool) or amount_paise <= 0:
        raise FlowError(ErrorKind.INVALID_INPUT, "Amount must be a positive number of paise")


async def get_wallet(db: AsyncSession, user_id: int, *, for_update: bool = False) -> Wallet:
    """Return the user's wallet, creating an empty one on first use."""
    stmt = select(Wallet).where(Wallet.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    wallet = result.scalar_one_or_none()
    if wallet is None:
        wallet = Wallet(user_id=user_id, balance_total_paise=0, balance_frozen_paise=0)
        db.add(wallet)
        await db.flush()
    return wallet


async def get_balance(db: AsyncSession, user_id: int) -> Balance:
    wallet = await get_wallet(db, user_id)
    return Balance(wallet.balance_total_paise, wallet.balance_frozen_paise)


def _post(
    db: AsyncSession,
    wallet: Wallet,
    amount_paise: int,
    direction: str,
    stage: str,
    *,
    conversation_id: int | None = None,
    escrow_hold_id: int | None = None,
    external_payment_id: str | None = None,
    note: str | None = None,
) -> Transaction:
    """Append one row and apply it to the cached balances."""
    signed = amount_paise if direction == "credit" else -amount_paise
    wallet.balance_total_paise += signed
    if conversation_id is not None:
        wallet.balance_frozen_paise += signed
    txn = Transaction(
        wallet_id=wallet.id,
        user_id=wallet.user_id,
        amount_paise=amount_paise,
        direction=direction,
        stage=stage,
        status="completed",
        conversation_id=conversation_id,
        escrow_hold_id=escrow_hold_id,
        external_payment_id=external_payment_id,
        note=note,
    )
    db.add(txn)
    return txn


def _require_available(wallet: Wallet, amount_paise: int) -> None:
    if wallet.available_paise < amount_paise:
        raise FlowError(
            ErrorKind.INSUFFICIENT_AVAILABLE,
            f"Available balance {wallet.available_paise} is below {amount_paise}",
        )


def _require_frozen(wallet: Wallet, amount_paise: int) -> None:
    if wallet.balance_frozen_paise < amount_paise:
        raise FlowError(
            ErrorKind.INSUFFICIENT_FROZEN,
            f"Frozen balance {wallet.balance_frozen_paise} is below {amount_paise}",
        )


async def credit(
    db: AsyncSession,
    user_id: int,
    amount_paise: int,
    *,
    stage: str = "deposit",
    escrow_hold_id: int | None = None,
    external_payment_id: str | None = None,
    note: str | None = None,
) -> Transaction:
    """Add funds to the available balance."""
    _check_amount(amount_paise)
    async with wallet_lock(user_id):
        wallet = await get_wallet(db, user_id, for_update=True)
        txn = _post(
            db, wallet, amount_paise, "credit", stage,
            escrow_hold_id=escrow_hold_id,
            external_payment_id=external_payment_id,
            note=note,
        )
        await db.flush()
    logger.info("Credited %d paise to user %s (%s)", amount_paise, user_id, stage)
    return txn


async def deposit_frozen(
    db: AsyncSession,
    user_id: int,
    amount_paise: int,
    *,
    hold_id: int,
    conversation_id: int,
    external_payment_id: str | None = None,
) -> Transaction:
    """Credit incoming funds straight into a conversation's escrow."""
    _check_amount(amount_paise)
    async with wallet_lock(user_id):
        wallet = await get_wallet(db, user_id, for_update=True)
        txn = _post(
            db, wallet, amount_paise, "credit", "freeze",
            conversation_id=conversation_id,
            escrow_hold_id=hold_id,
            external_payment_id=external_payment_id,
            note="payment_captured",
        )
        await db.flush()
    logger.info(
        "Deposited %d paise into escrow for user %s (conversation %s)",
        amount_paise, user_id, conversation_id,
    )
    return txn


async def freeze(
    db: AsyncSession,
    user_id: int,
    amount_paise: int,
    *,
    hold_id: int,
    conversation_id: int,
) -> Transaction:
    """Move available funds into a conversation's escrow."""
    _check_amount(amount_paise)
    async with wallet_lock(user_id):
        wallet = await get_wallet(db, user_id, for_update=True)
        _require_available(wallet, amount_paise)
        _post(db, wallet, amount_paise, "debit", "freeze", escrow_hold_id=hold_id)
        txn = _post(
            db, wallet, amount_paise, "credit", "freeze",
            conversation_id=conversation_id, escrow_hold_id=hold_id,
        )
        await db.flush()
    return txn


async def release(
    db: AsyncSession,
    user_id: int,
    amount_paise: int,
    *,
    hold_id: int | None = None,
    conversation_id: int,
    stage: str = "unfreeze",
) -> Transaction:
    """Move a conversation's escrowed funds back to available."""
    _check_amount(amount_paise)
    async with wallet_lock(user_id):
        wallet = await get_wallet(db, user_id, for_update=True)
        _require_frozen(wallet, amount_paise)
        _post(
            db, wallet, amount_paise, "debit", stage,
            conversation_id=conversation_id, escrow_hold_id=hold_id,
        )
        txn = _post(db, wallet, amount_paise, "credit", stage, escrow_hold_id=hold_id)
        await db.flush()
    return txn


async def refund_frozen(
    db: AsyncSession,
    user_id: int,
    amount_paise: int,
    *,
    hold_id: int,
    conversation_id: int,
) -> Transaction:
    """Take a conversation's escrowed funds out of the wallet altogether."""
    _check_amount(amount_paise)
    async with wallet_lock(user_id):
        wallet = await get_wallet(db, user_id, for_update=True)
        _require_frozen(wallet, amount_paise)
        txn = _post(
            db, wallet, amount_paise, "debit", "refund",
            conversation_id=conversation_id, escrow_hold_id=hold_id,
        )
        await db.flush()
    return txn


async def withdraw(
    db: AsyncSession,
    user_id: int,
    amount_paise: int,
    *,
    note: str | None = None,
) -> Transaction:
    """Pay out from the available balance."""
    _check_amount(amount_paise)
    async with wallet_lock(user_id):
        wallet = await get_wallet(db, user_id, for_update=True)
        _require_available(wallet, amount_paise)
        txn = _post(db, wallet, amount_paise, "debit", "withdraw", note=note)
        await db.flush()
    logger.info("Withdrew %d paise for user %s", amount_paise, user_id)
    return txn


_signed_amount = case(
    (Transaction.direction == "credit", Transaction.amount_paise),
    else_=-Transaction.amount_paise,
)


async def recompute_balance(db: AsyncSession, user_id: int) -> Balance:
    """Derive a wallet's balances from its transaction log alone."""
    result = await db.execute(
        select(
            func.coalesce(func.sum(_signed_amount), 0),
            func.coalesce(
                func.sum(
                    case(
                        (Transaction.conversation_id.is_not(None), _signed_amount),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(
            Transaction.user_id == user_id,
            Transaction.status == "completed",
        )
    )
    total, frozen = result.one()
    return Balance(int(total), int(frozen))


async def conversation_escrow_balance(db: AsyncSession, conversation_id: int) -> int:
    """Credits minus debits tagged to a conversation."""
    result = await db.execute(
        select(func.coalesce(func.sum(_signed_amount), 0)).where(
            Transaction.conversation_id == conversation_id,
            Transaction.status == "completed",
        )
    )
    return int(result.scalar_one())


async def list_transactions(
    db: AsyncSession, user_id: int, offset: int = 0, limit: int = 50,
) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())
