"""Message store plus the free-chat, seen and typing paths."""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from collab.api.schemas import MessageResponse
from collab.core.errors import ErrorKind, FlowError
from collab.models.conversation import Conversation
from collab.models.message import Message
from collab.models.user import User
from collab.realtime.publisher import EventBundle, publisher
from collab.services import notification as notification_store
from collab.services.conversation import (
    conversation_write,
    get_conversation,
    get_for_party,
    role_in,
    touch,
)

logger = logging.getLogger(__name__)

CHAT_CLOSED_STATUSES = ("closed", "cancelled")


def serialize(message: Message) -> dict:
    return MessageResponse.model_validate(message).model_dump(mode="json")


async def append(
    db: AsyncSession,
    conversation: Conversation,
    *,
    text: str,
    sender_id: int | None,
    receiver_id: int | None,
    message_type: str = "user_input",
    action_data: dict | None = None,
    transition: dict | None = None,
    media_url: str | None = None,
    client_nonce: str | None = None,
    supersede: bool = False,
) -> Message:
    """Insert a message and bump the conversation in the same unit of work.

    With ``supersede`` every outstanding actionable message in the
    conversation is marked obsolete first.
    """
    if supersede or action_data is not None:
        await db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation.id,
                Message.action_required == True,  # noqa: E712
            )
            .values(action_required=False)
        )
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        text=text,
        media_url=media_url,
        message_type=message_type,
        action_required=action_data is not None,
        action_data=action_data,
        transition=transition,
        client_nonce=client_nonce,
        seen=False,
    )
    db.add(message)
    touch(conversation)
    await db.flush()
    await db.refresh(message)
    return message


async def unread_in(db: AsyncSession, conversation_id: int, user_id: int) -> int:
    result = await db.execute(
        select(func.count(Message.id)).where(
            Message.conversation_id == conversation_id,
            Message.receiver_id == user_id,
            Message.seen == False,  # noqa: E712
        )
    )
    return result.scalar_one()


async def announce(
    db: AsyncSession,
    bundle: EventBundle,
    conversation: Conversation,
    message: Message,
    *,
    context: str = "chat",
    sender_name: str | None = None,
) -> None:
    """Queue the live events and the push for one committed message."""
    payload = serialize(message)
    parties = conversation.party_ids()
    bundle.chat_new(conversation.id, payload)
    bundle.conversation_list_updated(
        parties,
        {
            "conversation_id": conversation.id,
            "message": payload,
            "context": context,
            "action": "new_message",
        },
    )
    receiver_id = message.receiver_id
    if receiver_id is None:
        return
    bundle.notification(
        receiver_id,
        "message" if message.message_type == "user_input" else "flow_update",
        {
            "conversation_id": conversation.id,
            "message": payload,
            "context": context,
            "sender": {"id": message.sender_id, "name": sender_name},
        },
    )
    bundle.unread_count_updated(
        receiver_id,
        parties,
        {
            "conversation_id": conversation.id,
            "unread_count": await unread_in(db, conversation.id, receiver_id),
            "action": "increment",
        },
    )
    bundle.push(
        receiver_id,
        conversation.id,
        title=sender_name or "Collaboration update",
        body=message.text[:140],
        data={"message_id": message.id, "context": context},
    )


async def find_by_nonce(
    db: AsyncSession, conversation_id: int, sender_id: int, client_nonce: str,
) -> Message | None:
    result = await db.execute(
        select(Message).where(
            Message.conversation_id == conversation_id,
            Message.sender_id == sender_id,
            Message.client_nonce == client_nonce,
        )
    )
    return result.scalars().first()


async def send_chat_message(
    db: AsyncSession,
    conversation_id: int,
    user: User,
    text: str,
    *,
    media_url: str | None = None,
    client_nonce: str | None = None,
) -> Message:
    """Free-form chat between the two parties."""
    text = (text or "").strip()
    if not text and not media_url:
        raise FlowError(ErrorKind.INVALID_INPUT, "Message is empty")

    async with conversation_write(db, conversation_id) as uow:
        conversation = await get_conversation(db, conversation_id)
        if role_in(conversation, user.id) is None:
            raise FlowError(ErrorKind.NOT_AUTHORIZED, "You are not a party to this conversation")
        if conversation.chat_status in CHAT_CLOSED_STATUSES:
            raise FlowError(ErrorKind.INVALID_INPUT, "This conversation is closed")

        if client_nonce:
            existing = await find_by_nonce(db, conversation.id, user.id, client_nonce)
            if existing is not None:
                return existing

        receiver_id = conversation.other_party(user.id)
        message = await append(
            db,
            conversation,
            text=text,
            sender_id=user.id,
            receiver_id=receiver_id,
            media_url=media_url,
            client_nonce=client_nonce,
        )
        await notification_store.put(
            db,
            receiver_id,
            "message",
            title=f"New message from {user.name}",
            body=text[:140],
            data={
                "conversation_id": conversation.id,
                "sender_id": user.id,
                "message_id": message.id,
            },
            action_url=f"/conversations/{conversation.id}",
        )
        await announce(db, uow.bundle, conversation, message, sender_name=user.name)
    return message


async def mark_seen(db: AsyncSession, conversation_id: int, user: User) -> int:
    """Mark every unseen message addressed to ``user`` as seen; returns rows updated."""
    now = datetime.now(timezone.utc)
    async with conversation_write(db, conversation_id) as uow:
        conversation = await get_for_party(db, conversation_id, user)
        latest = (
            await db.execute(
                select(Message.id)
                .where(
                    Message.conversation_id == conversation.id,
                    Message.receiver_id == user.id,
                    Message.seen == False,  # noqa: E712
                )
                .order_by(Message.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if latest is None:
            return 0

        result = await db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation.id,
                Message.receiver_id == user.id,
                Message.seen == False,  # noqa: E712
            )
            .values(seen=True, seen_at=now)
        )
        updated = result.rowcount or 0
        parties = conversation.party_ids()
        uow.bundle.message_seen(
            conversation.id,
            parties,
            {"message_id": latest, "user_id": user.id, "ts": now.isoformat()},
        )
        uow.bundle.unread_count_updated(
            user.id,
            parties,
            {"conversation_id": conversation.id, "unread_count": 0, "action": "reset"},
        )
    return updated


async def list_messages(
    db: AsyncSession, conversation_id: int, user: User, page: int = 1, limit: int = 50,
) -> tuple[list[Message], int]:
    """One page counted from the newest message, returned oldest first."""
    conversation = await get_for_party(db, conversation_id, user)
    total = (
        await db.execute(
            select(func.count(Message.id)).where(Message.conversation_id == conversation.id)
        )
    ).scalar_one()
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation.id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    messages = list(result.scalars().all())
    messages.reverse()
    return messages, total


async def flow_log(db: AsyncSession, conversation_id: int) -> list[dict]:
    """Recorded flow transitions of a conversation, oldest first."""
    result = await db.execute(
        select(Message.transition)
        .where(
            Message.conversation_id == conversation_id,
            Message.transition.is_not(None),
        )
        .order_by(Message.id)
    )
    return [t for t in result.scalars().all() if t]


async def latest_message(db: AsyncSession, conversation_id: int) -> Message | None:
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def set_typing(
    db: AsyncSession, conversation_id: int, user: User, is_typing: bool,
) -> None:
    conversation = await get_for_party(db, conversation_id, user)
    bundle = EventBundle()
    bundle.user_typing(
        conversation.id,
        conversation.party_ids(),
        {"user_id": user.id, "is_typing": is_typing},
    )
    await publisher.publish(bundle)
