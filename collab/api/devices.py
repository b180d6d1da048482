from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from collab.api.schemas import DeviceRegister, DeviceResponse
from collab.core.deps import get_db
from collab.core.errors import ErrorKind, FlowError
from collab.core.security import get_current_user
from collab.models.notification import DeviceToken
from collab.models.user import User
from collab.realtime.push import deactivate_device, register_device

router = APIRouter(prefix="/devices", tags=["devices"])


@router.post("", response_model=DeviceResponse, status_code=201)
async def register(
    body: DeviceRegister,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> DeviceToken:
    """Register a push token for the caller; re-registering refreshes it."""
    return await register_device(db, user.id, body.token, body.platform)


@router.delete("/{token}", status_code=204)
async def unregister(
    token: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> None:
    if not await deactivate_device(db, user.id, token):
        raise FlowError(ErrorKind.NOT_FOUND, "Device not found")
