import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from collab.core.config import settings
from collab.core.errors import ErrorKind, FlowError
from collab.core.locks import conversation_lock, locks, wallet_locks
from collab.db.base import utcnow
from collab.models.conversation import Conversation
from collab.models.message import Message
from collab.models.user import User
from collab.realtime.publisher import EventBundle, publisher

logger = logging.getLogger(__name__)


def pair_key(
    brand_owner_id: int,
    influencer_id: int,
    campaign_id: int | None = None,
    bid_id: int | None = None,
) -> str:
    """Uniqueness key for a (brand owner, influencer, source) triple.

    Direct conversations ignore party order so one exists per user pair.
    """
    if campaign_id is not None and bid_id is not None:
        raise FlowError(ErrorKind.INVALID_INPUT, "A conversation has at most one source")
    if campaign_id is not None:
        return f"{brand_owner_id}:{influencer_id}:campaign:{campaign_id}"
    if bid_id is not None:
        return f"{brand_owner_id}:{influencer_id}:bid:{bid_id}"
    low, high = sorted((brand_owner_id, influencer_id))
    return f"direct:{low}:{high}"


def role_in(conversation: Conversation, user_id: int) -> str | None:
    if user_id == conversation.brand_owner_id:
        return "brand_owner"
    if user_id == conversation.influencer_id:
        return "influencer"
    return None


async def get_conversation(db: AsyncSession, conversation_id: int) -> Conversation:
    result = await db.execute(select(Conversation).where(Conversation.id == conversation_id))
    conversation = result.scalar_one_or_none()
    if conversation is None:
        raise FlowError(ErrorKind.NOT_FOUND, "Conversation not found")
    return conversation


async def get_for_party(db: AsyncSession, conversation_id: int, user: User) -> Conversation:
    """Load a conversation the caller takes part in (admins see all)."""
    conversation = await get_conversation(db, conversation_id)
    if role_in(conversation, user.id) is None and not user.is_admin:
        raise FlowError(ErrorKind.NOT_AUTHORIZED, "You are not a party to this conversation")
    return conversation


async def get_or_create(
    db: AsyncSession,
    brand_owner_id: int,
    influencer_id: int,
    *,
    campaign_id: int | None = None,
    bid_id: int | None = None,
) -> tuple[Conversation, bool]:
    """Return the conversation for the triple, creating it in ``initial``."""
    if brand_owner_id == influencer_id:
        raise FlowError(ErrorKind.INVALID_INPUT, "Cannot start a conversation with yourself")
    key = pair_key(brand_owner_id, influencer_id, campaign_id, bid_id)

    async with locks.hold(f"pair:{key}"):
        result = await db.execute(select(Conversation).where(Conversation.pair_key == key))
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing, False

        conversation = Conversation(
            brand_owner_id=brand_owner_id,
            influencer_id=influencer_id,
            campaign_id=campaign_id,
            bid_id=bid_id,
            pair_key=key,
            chat_status="automated",
            flow_state="initial",
            awaiting_role="brand_owner",
            flow_data={},
        )
        db.add(conversation)
        try:
            await db.commit()
        except IntegrityError:
            # Another instance created it first
            await db.rollback()
            result = await db.execute(select(Conversation).where(Conversation.pair_key == key))
            return result.scalar_one(), False
        await db.refresh(conversation)
        logger.info("Conversation %s created (%s)", conversation.id, key)
        return conversation, True


async def list_for_user(
    db: AsyncSession, user_id: int, offset: int = 0, limit: int = 50,
) -> list[tuple[Conversation, int]]:
    """The user's conversations, most recently active first, with unread counts."""
    result = await db.execute(
        select(Conversation)
        .where(
            or_(Conversation.brand_owner_id == user_id, Conversation.influencer_id == user_id)
        )
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        .offset(offset)
        .limit(limit)
    )
    conversations = list(result.scalars().all())
    counts = await unread_counts(db, user_id, [c.id for c in conversations])
    return [(c, counts.get(c.id, 0)) for c in conversations]


async def unread_counts(
    db: AsyncSession, user_id: int, conversation_ids: list[int],
) -> dict[int, int]:
    if not conversation_ids:
        return {}
    result = await db.execute(
        select(Message.conversation_id, func.count(Message.id))
        .where(
            Message.conversation_id.in_(conversation_ids),
            Message.receiver_id == user_id,
            Message.seen == False,  # noqa: E712
        )
        .group_by(Message.conversation_id)
    )
    return {cid: count for cid, count in result.all()}


def touch(conversation: Conversation) -> None:
    conversation.updated_at = utcnow()


class ConversationWrite:
    """State for one serialized write to a conversation."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.bundle = EventBundle()
        self._stack = AsyncExitStack()

    async def lock_wallets(self, *user_ids: int) -> None:
        """Hold wallet locks until after commit."""
        await self._stack.enter_async_context(wallet_locks(*user_ids))


@asynccontextmanager
async def conversation_write(
    db: AsyncSession, conversation_id: int,
) -> AsyncIterator[ConversationWrite]:
    """Serialize, time-box, commit, then publish a conversation write.

    The body runs under the conversation lock and the transition deadline.
    Any failure rolls the session back. Events collected on ``bundle`` are
    published after commit while the lock is still held.
    """
    uow = ConversationWrite(db)
    async with uow._stack:
        try:
            async with asyncio.timeout(settings.transition_timeout_seconds):
                await uow._stack.enter_async_context(conversation_lock(conversation_id))
                yield uow
        except TimeoutError:
            await db.rollback()
            logger.warning("Write to conversation %s timed out", conversation_id)
            raise FlowError(ErrorKind.TIMEOUT, "The action took too long and was not applied")
        except BaseException:
            await db.rollback()
            raise
        await db.commit()
        await publisher.publish(uow.bundle)
