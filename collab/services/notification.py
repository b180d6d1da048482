"""Persisted per-user notifications.

``put`` is called inside a caller's unit of work and only flushes; the
read/delete helpers back the notification endpoints and commit.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from collab.core.config import settings
from collab.core.errors import ErrorKind, FlowError
from collab.models.notification import Notification

logger = logging.getLogger(__name__)


def _not_expired(now: datetime):
    return or_(Notification.expires_at.is_(None), Notification.expires_at > now)


async def put(
    db: AsyncSession,
    user_id: int,
    type: str,
    title: str,
    body: str,
    data: dict | None = None,
    action_url: str | None = None,
    expires_at: datetime | None = None,
) -> Notification:
    """Store a notification unless an identical one landed moments ago.

    Two notifications are identical when user, type, conversation and
    sender match within ``notification_dedupe_seconds``; the earlier
    record is returned instead.
    """
    data = data or {}
    conversation_id = data.get("conversation_id")
    sender_id = data.get("sender_id")
    now = datetime.now(timezone.utc)

    window_start = now - timedelta(seconds=settings.notification_dedupe_seconds)
    result = await db.execute(
        select(Notification)
        .where(
            Notification.user_id == user_id,
            Notification.type == type,
            Notification.conversation_id.is_(None)
            if conversation_id is None
            else Notification.conversation_id == conversation_id,
            Notification.sender_id.is_(None)
            if sender_id is None
            else Notification.sender_id == sender_id,
            Notification.created_at >= window_start,
        )
        .order_by(Notification.id.desc())
        .limit(1)
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        logger.debug("Deduplicated %s notification for user %s", type, user_id)
        return existing

    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        body=body,
        data=data,
        action_url=action_url,
        conversation_id=conversation_id,
        sender_id=sender_id,
        status="pending",
        expires_at=expires_at or now + timedelta(days=settings.notification_ttl_days),
    )
    db.add(notification)
    await db.flush()
    return notification


async def list_for_user(
    db: AsyncSession,
    user_id: int,
    *,
    status: str | None = None,
    type: str | None = None,
    unread_only: bool = False,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[Notification], int]:
    now = datetime.now(timezone.utc)
    conditions = [Notification.user_id == user_id, _not_expired(now)]
    if status:
        conditions.append(Notification.status == status)
    if type:
        conditions.append(Notification.type == type)
    if unread_only:
        conditions.append(Notification.read_at.is_(None))

    total = (
        await db.execute(select(func.count(Notification.id)).where(*conditions))
    ).scalar_one()
    result = await db.execute(
        select(Notification)
        .where(*conditions)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def unread_count(db: AsyncSession, user_id: int) -> int:
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.read_at.is_(None),
            _not_expired(now),
        )
    )
    return result.scalar_one()


async def _get_owned(db: AsyncSession, notification_id: int, user_id: int) -> Notification:
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id, Notification.user_id == user_id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise FlowError(ErrorKind.NOT_FOUND, "Notification not found")
    return notification


async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> Notification:
    notification = await _get_owned(db, notification_id, user_id)
    if notification.read_at is None:
        notification.read_at = datetime.now(timezone.utc)
        notification.status = "delivered"
        await db.commit()
        await db.refresh(notification)
    return notification


async def mark_all_read(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read_at.is_(None))
        .values(read_at=datetime.now(timezone.utc), status="delivered")
    )
    await db.commit()
    return result.rowcount or 0


async def delete(db: AsyncSession, notification_id: int, user_id: int) -> None:
    notification = await _get_owned(db, notification_id, user_id)
    await db.delete(notification)
    await db.commit()


async def clear(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        sa_delete(Notification).where(Notification.user_id == user_id)
    )
    await db.commit()
    return result.rowcount or 0


async def purge_expired(db: AsyncSession, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        sa_delete(Notification)
        .where(Notification.expires_at.is_not(None), Notification.expires_at <= now)
        # Stored timestamps may load naive; match rows in SQL only
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0
