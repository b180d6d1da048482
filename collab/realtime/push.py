"""Offline push delivery over the device-token registry.

A push goes out only when the receiver is absent from the conversation
room the message belongs to. Delivery itself runs off the request path:
as a Celery task (``push_via_worker``) or as a tracked asyncio task.
"""

import asyncio
import logging
from datetime import datetime, timezone

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from collab.core.config import settings
from collab.models.notification import DeviceToken
from collab.realtime.hub import RealtimeHub, conversation_room, hub

logger = logging.getLogger(__name__)

_UNREGISTERED_ERRORS = frozenset({"NotRegistered", "InvalidRegistration", "UNREGISTERED"})


class TokenUnregistered(Exception):
    """The provider no longer knows this device token."""


class TransientPushError(Exception):
    """Provider-side failure worth retrying."""


class PushClient:
    """Thin async wrapper around the FCM HTTP send endpoint."""

    def __init__(self, api_url: str | None = None, server_key: str | None = None) -> None:
        self.api_url = api_url or settings.push_api_url
        self.server_key = server_key or settings.push_server_key

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(
            (httpx.ConnectError, httpx.TimeoutException, TransientPushError)
        ),
        reraise=True,
    )
    async def send(self, token: str, title: str, body: str, data: dict | None = None) -> None:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(
                self.api_url,
                headers={"Authorization": f"key={self.server_key}"},
                json={
                    "to": token,
                    "notification": {"title": title, "body": body},
                    "data": {k: str(v) for k, v in (data or {}).items()},
                },
            )
        if resp.status_code >= 500:
            raise TransientPushError(f"push provider returned {resp.status_code}")
        if resp.status_code == 404:
            raise TokenUnregistered(token)
        resp.raise_for_status()
        for result in resp.json().get("results", []):
            error = result.get("error")
            if error in _UNREGISTERED_ERRORS:
                raise TokenUnregistered(token)
            if error == "Unavailable":
                raise TransientPushError(error)


class PushDispatcher:
    def __init__(self, presence: RealtimeHub | None = None, client: PushClient | None = None) -> None:
        self.presence = presence or hub
        self.client = client or PushClient()
        self._tasks: set[asyncio.Task] = set()

    def should_push(self, receiver_id: int, conversation_id: int) -> bool:
        return not self.presence.is_in_room(receiver_id, conversation_room(conversation_id))

    def dispatch(
        self,
        receiver_id: int,
        conversation_id: int,
        title: str,
        body: str,
        data: dict | None = None,
    ) -> bool:
        """Queue one push for an absent receiver. Returns False when suppressed."""
        if not self.should_push(receiver_id, conversation_id):
            logger.debug(
                "Push to user %s suppressed: present in conversation %s",
                receiver_id, conversation_id,
            )
            return False
        payload = dict(data or {}, conversation_id=conversation_id)
        self._schedule(receiver_id, title, body, payload)
        return True

    def _schedule(self, user_id: int, title: str, body: str, data: dict) -> None:
        if settings.push_via_worker:
            from collab.workers.push import deliver_push

            deliver_push.delay(user_id, title, body, data)
            return
        task = asyncio.create_task(self._deliver_in_process(user_id, title, body, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver_in_process(self, user_id: int, title: str, body: str, data: dict) -> None:
        from collab.db.session import async_session_factory

        try:
            async with async_session_factory() as db:
                await self.deliver(db, user_id, title, body, data)
        except Exception:
            logger.exception("Push delivery to user %s failed", user_id)

    async def deliver(
        self, db: AsyncSession, user_id: int, title: str, body: str, data: dict | None = None,
    ) -> int:
        """Send to every active device of ``user_id``; returns successful sends."""
        result = await db.execute(
            select(DeviceToken).where(
                DeviceToken.user_id == user_id, DeviceToken.active == True,  # noqa: E712
            )
        )
        tokens = list(result.scalars().all())
        delivered = 0
        for device in tokens:
            try:
                await self.client.send(device.token, title, body, data)
                delivered += 1
            except TokenUnregistered:
                logger.info("Deactivating unregistered device token %s", device.id)
                device.active = False
            except Exception:
                logger.exception("Push to device %s failed", device.id)
        await db.commit()
        return delivered

    async def drain(self) -> None:
        """Wait for in-process deliveries (tests and shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


dispatcher = PushDispatcher()


async def register_device(db: AsyncSession, user_id: int, token: str, platform: str) -> DeviceToken:
    """Register or refresh a device token, moving it to ``user_id`` if needed."""
    now = datetime.now(timezone.utc)
    result = await db.execute(select(DeviceToken).where(DeviceToken.token == token))
    device = result.scalar_one_or_none()
    if device is None:
        device = DeviceToken(
            user_id=user_id, token=token, platform=platform, last_seen=now, active=True,
        )
        db.add(device)
    else:
        if device.user_id != user_id:
            logger.info("Device token %s moved to user %s", device.id, user_id)
        device.user_id = user_id
        device.platform = platform
        device.last_seen = now
        device.active = True
    await db.commit()
    await db.refresh(device)
    return device


async def deactivate_device(db: AsyncSession, user_id: int, token: str) -> bool:
    result = await db.execute(
        select(DeviceToken).where(DeviceToken.token == token, DeviceToken.user_id == user_id)
    )
    device = result.scalar_one_or_none()
    if device is None:
        return False
    device.active = False
    await db.commit()
    return True
