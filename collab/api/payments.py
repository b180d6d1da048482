"""Payment endpoints: checkout order, client verification and admin capture."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from collab.api.schemas import (
    AdminCaptureRequest,
    PaymentCheckout,
    PaymentOrderCreate,
    PaymentOrderResponse,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
)
from collab.core.config import settings
from collab.core.deps import get_db
from collab.core.rate_limit import limiter
from collab.core.security import get_current_user, require_admin
from collab.models.user import User
from collab.services import payment as payment_svc

router = APIRouter(prefix="/payments", tags=["payments"])
admin_router = APIRouter(prefix="/admin/payments", tags=["admin"])


@router.post("/orders", response_model=PaymentCheckout, status_code=201)
@limiter.limit(settings.rate_limit_payments)
async def create_order(
    request: Request,
    body: PaymentOrderCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PaymentCheckout:
    """Create (or return) the gateway order for the agreed amount."""
    order = await payment_svc.create_checkout(db, body.conversation_id, user)
    return PaymentCheckout(
        order=PaymentOrderResponse.model_validate(order),
        key_id=settings.razorpay_key_id,
    )


@router.post("/verify", response_model=PaymentVerifyResponse)
@limiter.limit(settings.rate_limit_payments)
async def verify_payment(
    request: Request,
    body: PaymentVerifyRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PaymentVerifyResponse:
    """Checkout callback; safe to call after the webhook already captured."""
    order, already = await payment_svc.verify_client_payment(
        db, body.order_id, body.payment_id, body.signature, user,
    )
    return PaymentVerifyResponse(
        verified=True,
        already_processed=already,
        order=PaymentOrderResponse.model_validate(order),
    )


@admin_router.post("/{order_id}/capture", response_model=PaymentVerifyResponse)
async def admin_capture(
    order_id: str,
    body: AdminCaptureRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> PaymentVerifyResponse:
    """Admin: record a payment the gateway captured but the platform missed."""
    order, already = await payment_svc.admin_capture(db, order_id, body.payment_id, admin)
    return PaymentVerifyResponse(
        verified=True,
        already_processed=already,
        order=PaymentOrderResponse.model_validate(order),
    )
