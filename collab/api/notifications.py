from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from collab.api.schemas import CountResponse, NotificationPage, NotificationResponse
from collab.core.deps import get_db
from collab.core.security import get_current_user
from collab.models.notification import Notification
from collab.models.user import User
from collab.services import notification as notification_svc

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationPage)
async def list_notifications(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: str | None = Query(default=None, pattern="^(pending|delivered)$"),
    type: str | None = Query(default=None, max_length=50),
    unread_only: bool = False,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> NotificationPage:
    """Unexpired notifications, newest first."""
    items, total = await notification_svc.list_for_user(
        db,
        user.id,
        status=status,
        type=type,
        unread_only=unread_only,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return NotificationPage(
        items=[NotificationResponse.model_validate(n) for n in items],
        page=page,
        limit=limit,
        total=total,
    )


@router.get("/unread-count", response_model=CountResponse)
async def unread_count(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CountResponse:
    return CountResponse(count=await notification_svc.unread_count(db, user.id))


@router.put("/read-all", response_model=CountResponse)
async def mark_all_read(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CountResponse:
    return CountResponse(count=await notification_svc.mark_all_read(db, user.id))


@router.put("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Notification:
    return await notification_svc.mark_read(db, notification_id, user.id)


@router.delete("/{notification_id}", status_code=204)
async def delete_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> None:
    await notification_svc.delete(db, notification_id, user.id)


@router.delete("", response_model=CountResponse)
async def clear_notifications(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CountResponse:
    """Delete every notification of the caller."""
    return CountResponse(count=await notification_svc.clear(db, user.id))
