"""Conversation endpoints: listing, the collaboration flow and chat messages."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from collab.api.schemas import (
    ButtonClickRequest,
    ConversationCreated,
    ConversationDetail,
    ConversationListItem,
    ConversationResponse,
    DirectConnectRequest,
    EscrowHoldResponse,
    ExpressInterestRequest,
    FlowResult,
    MessageCreate,
    MessagePage,
    MessageResponse,
    PaymentOrderResponse,
    SeenResponse,
    TextInputRequest,
)
from collab.core.deps import get_db
from collab.core.security import get_current_user
from collab.models.message import Message
from collab.models.user import User
from collab.services import conversation as conversation_svc
from collab.services import escrow, flow_engine, messaging, payment
from collab.services.flow_state_machine import get_available_actions

router = APIRouter(prefix="/conversations", tags=["conversations"])
connect_router = APIRouter(tags=["conversations"])


@router.get("", response_model=list[ConversationListItem])
async def list_conversations(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[ConversationListItem]:
    """The caller's conversations, most recently active first."""
    rows = await conversation_svc.list_for_user(db, user.id, offset, limit)
    items = []
    for conversation, unread in rows:
        item = ConversationListItem.model_validate(conversation)
        item.unread_count = unread
        last = await messaging.latest_message(db, conversation.id)
        if last is not None:
            item.last_message = MessageResponse.model_validate(last)
        items.append(item)
    return items


@router.get("/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ConversationDetail:
    """Conversation state plus the actions the caller may take now."""
    conversation = await conversation_svc.get_for_party(db, conversation_id, user)
    role = conversation_svc.role_in(conversation, user.id) or "admin"
    hold = await escrow.get_latest(db, conversation.id)
    order = await payment.get_latest_order(db, conversation.id)

    detail = ConversationDetail(
        **ConversationResponse.model_validate(conversation).model_dump(),
        my_role=role,
        available_actions=get_available_actions(conversation.flow_state, role),
        escrow_hold=EscrowHoldResponse.model_validate(hold) if hold else None,
        payment_order=PaymentOrderResponse.model_validate(order) if order else None,
    )
    return detail


@router.post("/express-interest", response_model=ConversationCreated, status_code=201)
async def express_interest(
    body: ExpressInterestRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ConversationCreated:
    """Brand owner opens a collaboration with an influencer."""
    conversation, is_existing = await flow_engine.express_interest(
        db,
        user,
        body.influencer_id,
        body.amount,
        campaign_id=body.campaign_id,
        bid_id=body.bid_id,
        message=body.message,
        max_revokes=body.max_revokes,
    )
    return ConversationCreated(
        conversation=ConversationResponse.model_validate(conversation),
        is_existing=is_existing,
    )


@connect_router.post("/direct-connect", response_model=ConversationCreated, status_code=201)
async def direct_connect(
    body: DirectConnectRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ConversationCreated:
    """Open the direct conversation between the caller and another user."""
    conversation, is_existing = await flow_engine.direct_connect(
        db, user, body.target_user_id, body.initial_message,
    )
    return ConversationCreated(
        conversation=ConversationResponse.model_validate(conversation),
        is_existing=is_existing,
    )


@router.post("/{conversation_id}/button-click", response_model=FlowResult)
async def button_click(
    conversation_id: int,
    body: ButtonClickRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Apply the flow action behind an envelope button."""
    return await flow_engine.perform_action(
        db, conversation_id, user, body.button_id, body.data,
    )


@router.post("/{conversation_id}/text-input", response_model=FlowResult)
async def text_input(
    conversation_id: int,
    body: TextInputRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Typed input: an amount or project brief when the flow expects one, else chat."""
    return await flow_engine.handle_text_input(
        db, conversation_id, user, body.text, body.input_type,
    )


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(
    conversation_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> MessagePage:
    messages, total = await messaging.list_messages(db, conversation_id, user, page, limit)
    return MessagePage(
        items=[MessageResponse.model_validate(m) for m in messages],
        page=page,
        limit=limit,
        total=total,
    )


@router.post("/{conversation_id}/messages", response_model=MessageResponse, status_code=201)
async def send_message(
    conversation_id: int,
    body: MessageCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Message:
    return await messaging.send_chat_message(
        db,
        conversation_id,
        user,
        body.text,
        media_url=body.media_url,
        client_nonce=body.client_nonce,
    )


@router.put("/{conversation_id}/seen", response_model=SeenResponse)
async def mark_seen(
    conversation_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> SeenResponse:
    """Mark every message addressed to the caller as seen."""
    updated = await messaging.mark_seen(db, conversation_id, user)
    unread = await messaging.unread_in(db, conversation_id, user.id)
    return SeenResponse(updated=updated, unread_count=unread)
