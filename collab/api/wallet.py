from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from collab.api.schemas import TransactionResponse, WalletResponse, WithdrawRequest
from collab.core.deps import get_db
from collab.core.security import get_current_user
from collab.models.user import User
from collab.models.wallet import Transaction
from collab.services import ledger
from collab.services import wallet as wallet_svc

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("", response_model=WalletResponse)
async def get_wallet(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    """Total, frozen (escrowed) and available balance in paise."""
    balance = await wallet_svc.get_summary(db, user)
    return WalletResponse(**balance.as_dict())


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[Transaction]:
    return await ledger.list_transactions(db, user.id, offset, limit)


@router.post("/withdraw", response_model=TransactionResponse, status_code=201)
async def withdraw(
    body: WithdrawRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Transaction:
    return await wallet_svc.withdraw_funds(db, user, body.amount_paise)
