from sqlalchemy.ext.asyncio import AsyncSession

from collab.core.locks import wallet_lock
from collab.models.user import User
from collab.models.wallet import Transaction
from collab.services import ledger
from collab.services.audit import log_audit


async def get_summary(db: AsyncSession, user: User) -> ledger.Balance:
    balance = await ledger.get_balance(db, user.id)
    await db.commit()
    return balance


async def withdraw_funds(db: AsyncSession, user: User, amount_paise: int) -> Transaction:
    """Debit the available balance; payout rails run outside this service."""
    async with wallet_lock(user.id):
        try:
            txn = await ledger.withdraw(db, user.id, amount_paise, note="withdrawal")
            await log_audit(
                db,
                action="wallet_withdraw",
                entity_type="transaction",
                entity_id=txn.id,
                user_id=user.id,
                details={"amount_paise": amount_paise},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    await db.refresh(txn)
    return txn
