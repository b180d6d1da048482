from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from collab.core.deps import get_db
from collab.services import payment as payment_svc

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Gateway callback. The signature covers the raw body, so it is read unparsed."""
    body = await request.body()
    return await payment_svc.handle_webhook(db, body, x_razorpay_signature)
