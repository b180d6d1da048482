from fastapi import APIRouter

from collab.core.config import settings
from collab.realtime.hub import hub

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "online_users": len(hub.online_users())}


@router.get("/config/public")
async def public_config() -> dict:
    """Public negotiation limits and checkout settings."""
    return {
        "currency": settings.currency,
        "min_amount": settings.min_amount,
        "max_amount": settings.max_amount,
        "max_revokes_default": settings.max_revokes_default,
        "max_revokes_limit": settings.max_revokes_limit,
        "payment_key_id": settings.razorpay_key_id,
    }
