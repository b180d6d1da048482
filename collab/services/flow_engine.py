"""Collaboration flow engine.

Entry point for every state-changing action on a conversation: button
clicks, mapped text input, payment capture and the system sweeps. Each
call runs inside :func:`collab.services.conversation.conversation_write`,
so it is serialized per conversation, bounded by the transition deadline,
applied atomically (state, messages, ledger, escrow, notifications) and
announced only after commit.
"""

import hashlib
import json
import logging
import re
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from collab.api.schemas import PaymentOrderResponse
from collab.core.config import settings
from collab.core.errors import ErrorKind, FlowError
from collab.db.base import utcnow
from collab.models.action_receipt import ActionReceipt
from collab.models.conversation import Conversation
from collab.models.payment import PaymentOrder
from collab.models.user import User
from collab.services import escrow, ledger, messaging
from collab.services import notification as notification_store
from collab.services.audit import log_audit
from collab.services.conversation import (
    ConversationWrite,
    conversation_write,
    get_conversation,
    get_for_party,
    get_or_create,
    role_in,
)
from collab.services.envelopes import build_envelope, dump_envelope
from collab.services.flow_state_machine import (
    AMOUNT_ACTIONS,
    CANCEL_ACTIONS,
    PAYMENT_ACTIONS,
    Actor,
    ChatStatus,
    FlowAction,
    FlowState,
    InvalidTransitionError,
    action_for_text_input,
    advance,
    awaiting_role,
    is_terminal,
)

logger = logging.getLogger(__name__)

_AMOUNT_RE = re.compile(r"(?:₹|rs\.?|inr)?\s*([\d,]+)\s*(?:₹|rs\.?|inr)?", re.IGNORECASE)

_ACTION_TEXT: dict[FlowAction, str] = {
    FlowAction.EXPRESS_INTEREST: "Collaboration request sent with a budget of ₹{amount}",
    FlowAction.ACCEPT_CONNECTION: "Connection request accepted",
    FlowAction.REJECT_CONNECTION: "Connection request declined",
    FlowAction.SEND_PROJECT_DETAILS: "Project details: {text}",
    FlowAction.ACCEPT_PRICE: "Price of ₹{agreed} accepted",
    FlowAction.NEGOTIATE_PRICE: "Counter-offer sent: ₹{amount}",
    FlowAction.SEND_PRICE_OFFER: "New offer sent: ₹{amount}",
    FlowAction.REJECT_PRICE: "Price negotiation declined",
    FlowAction.PROCEED_TO_PAYMENT: "Payment of ₹{agreed} initiated",
    FlowAction.PAYMENT_CAPTURED: "Payment of ₹{agreed} received and held in escrow",
    FlowAction.SUBMIT_WORK: "Work submitted",
    FlowAction.RESUBMIT_WORK: "Revised work submitted",
    FlowAction.APPROVE_WORK: "Work approved. Funds released and chat closed",
    FlowAction.REQUEST_REVISION: "Revision requested: {feedback}",
    FlowAction.AUTO_RELEASE: "Escrow released automatically after inactivity",
    FlowAction.REJECT_COLLABORATION: "Collaboration cancelled",
}


def action_hash(action: str, data: dict | None, actor_id: int | None) -> str:
    raw = json.dumps(
        {"action": action, "data": data or {}, "actor": actor_id},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(raw.encode()).hexdigest()


def parse_amount(text: str) -> int:
    match = _AMOUNT_RE.fullmatch((text or "").strip())
    if not match:
        raise FlowError(ErrorKind.INVALID_INPUT, "Enter the amount in whole rupees")
    return int(match.group(1).replace(",", ""))


def _check_amount(value) -> int:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, bool) or not isinstance(value, int):
        raise FlowError(ErrorKind.INVALID_INPUT, "Amount must be a whole number of rupees")
    if not settings.min_amount <= value <= settings.max_amount:
        raise FlowError(
            ErrorKind.INVALID_INPUT,
            f"Amount must be between {settings.min_amount} and {settings.max_amount}",
        )
    return value


def _clean_data(action: FlowAction, data: dict) -> dict:
    """Validate action input and keep only the fields the action uses."""
    if action in AMOUNT_ACTIONS:
        cleaned = {"amount": _check_amount(data.get("amount"))}
        if action == FlowAction.EXPRESS_INTEREST:
            max_revokes = data.get("max_revokes") or settings.max_revokes_default
            if not isinstance(max_revokes, int) or not (
                1 <= max_revokes <= settings.max_revokes_limit
            ):
                raise FlowError(
                    ErrorKind.INVALID_INPUT,
                    f"max_revokes must be between 1 and {settings.max_revokes_limit}",
                )
            cleaned["max_revokes"] = max_revokes
            if data.get("message"):
                cleaned["message"] = str(data["message"])[:2000]
        return cleaned

    if action == FlowAction.SEND_PROJECT_DETAILS:
        text = str(data.get("text") or "").strip()
        if not text:
            raise FlowError(ErrorKind.INVALID_INPUT, "Project details are required")
        return {"text": text[:4000]}

    if action in (FlowAction.SUBMIT_WORK, FlowAction.RESUBMIT_WORK):
        link = data.get("link")
        files = data.get("files") or []
        if not isinstance(files, list):
            raise FlowError(ErrorKind.INVALID_INPUT, "files must be a list")
        if not link and not files:
            raise FlowError(ErrorKind.INVALID_INPUT, "A link or at least one file is required")
        return {"link": link, "files": [str(f) for f in files], "note": data.get("note")}

    if action == FlowAction.REQUEST_REVISION:
        return {"feedback": (str(data.get("feedback") or "").strip() or None)}

    if action in CANCEL_ACTIONS:
        return {"reason": data.get("reason")} if data.get("reason") else {}

    return {}


def _action_text(action: FlowAction, data: dict, flow_data: dict) -> str:
    template = _ACTION_TEXT.get(action, action.value.replace("_", " ").capitalize())
    return template.format(
        amount=data.get("amount", ""),
        text=data.get("text", ""),
        feedback=data.get("feedback") or "see comments",
        agreed=flow_data.get("agreed_amount", ""),
    )


def _party_for(conversation: Conversation, role: str | None) -> int | None:
    if role == Actor.BRAND_OWNER:
        return conversation.brand_owner_id
    if role == Actor.INFLUENCER:
        return conversation.influencer_id
    return None


def _resolve_role(
    conversation: Conversation, user: User | None, action: FlowAction, system: bool,
) -> str:
    if system:
        return Actor.SYSTEM.value
    if user is None:
        raise FlowError(ErrorKind.NOT_AUTHORIZED, "An authenticated caller is required")
    role = role_in(conversation, user.id)
    if role is not None:
        return role
    if user.is_admin and action in PAYMENT_ACTIONS:
        return Actor.ADMIN.value
    raise FlowError(ErrorKind.NOT_AUTHORIZED, "You are not a party to this conversation")


def _check_turn(conversation: Conversation, role: str) -> None:
    if is_terminal(conversation.flow_state):
        raise FlowError(ErrorKind.INVALID_INPUT, "This collaboration has ended")
    if role in (Actor.BRAND_OWNER, Actor.INFLUENCER) and role != conversation.awaiting_role:
        raise FlowError(
            ErrorKind.NOT_YOUR_TURN,
            f"Waiting for the {conversation.awaiting_role or 'other party'} to respond",
        )


def _order_dict(order: PaymentOrder | None) -> dict | None:
    if order is None:
        return None
    return PaymentOrderResponse.model_validate(order).model_dump(mode="json")


def _result(conversation: Conversation, message_id: int | None, order: PaymentOrder | None = None) -> dict:
    return {
        "conversation_id": conversation.id,
        "state": conversation.flow_state,
        "awaiting_role": conversation.awaiting_role,
        "chat_status": conversation.chat_status,
        "message_id": message_id,
        "payment_order": _order_dict(order),
    }


async def _milestone(
    uow: ConversationWrite,
    conversation: Conversation,
    user_id: int,
    type: str,
    title: str,
    body: str,
) -> None:
    notification = await notification_store.put(
        uow.db,
        user_id,
        type,
        title,
        body,
        data={"conversation_id": conversation.id},
        action_url=f"/conversations/{conversation.id}",
    )
    uow.bundle.notification(
        user_id,
        type,
        {
            "conversation_id": conversation.id,
            "notification_id": notification.id,
            "title": title,
            "body": body,
        },
    )


async def _capture_funds(uow: ConversationWrite, conversation: Conversation, data: dict) -> None:
    db = uow.db
    amount = data["amount_paise"]
    payment_id = data.get("payment_id")
    influencer_id = conversation.influencer_id
    await uow.lock_wallets(influencer_id)
    hold = await escrow.create(
        db,
        conversation.id,
        influencer_id,
        amount,
        "payment_captured",
        external_payment_id=payment_id,
        deposit=True,
    )
    await log_audit(
        db,
        action="payment_captured",
        entity_type="escrow_hold",
        entity_id=hold.id,
        details={"conversation_id": conversation.id, "amount_paise": amount, "payment_id": payment_id},
    )
    rupees = amount // 100
    await _milestone(
        uow, conversation, influencer_id, "payment_received",
        "Payment received",
        f"₹{rupees} is held in escrow. You can start working on the collaboration.",
    )
    await _milestone(
        uow, conversation, conversation.brand_owner_id, "payment_confirmed",
        "Payment confirmed",
        f"Your payment of ₹{rupees} is held in escrow until you approve the work.",
    )


async def _release_funds(uow: ConversationWrite, conversation: Conversation, reason: str) -> None:
    db = uow.db
    hold = await escrow.get_held(db, conversation.id)
    if hold is None:
        raise FlowError(ErrorKind.NOT_FOUND, "No funds are held in escrow for this conversation")
    await uow.lock_wallets(hold.user_id)
    await escrow.release(db, hold, reason)
    await log_audit(
        db,
        action="escrow_released",
        entity_type="escrow_hold",
        entity_id=hold.id,
        details={"conversation_id": conversation.id, "reason": reason},
    )
    rupees = hold.amount_paise // 100
    await _milestone(
        uow, conversation, conversation.influencer_id, "funds_released",
        "Funds released", f"₹{rupees} is now available in your wallet.",
    )
    await _milestone(
        uow, conversation, conversation.brand_owner_id, "collaboration_completed",
        "Collaboration completed", "The collaboration is complete and the chat is closed.",
    )


async def _cancel(uow: ConversationWrite, conversation: Conversation, reason: str) -> bool:
    """Close open payment orders and refund any held funds to the brand owner.

    Returns True if funds were refunded.
    """
    db = uow.db
    open_orders = await db.execute(
        select(PaymentOrder).where(
            PaymentOrder.conversation_id == conversation.id,
            PaymentOrder.status == "created",
        )
    )
    for order in open_orders.scalars().all():
        order.status = "failed"
        order.meta = dict(order.meta or {}, failure_reason=reason)
        logger.info("Payment order %s closed: %s", order.external_order_id, reason)

    hold = await escrow.get_held(db, conversation.id)
    refunded = False
    if hold is not None:
        await uow.lock_wallets(hold.user_id, conversation.brand_owner_id)
        await escrow.refund(db, hold, reason, refund_to=conversation.brand_owner_id)
        await log_audit(
            db,
            action="escrow_refunded",
            entity_type="escrow_hold",
            entity_id=hold.id,
            details={"conversation_id": conversation.id, "reason": reason},
        )
        refunded = True
    for user_id in conversation.party_ids():
        await _milestone(
            uow, conversation, user_id, "collaboration_cancelled",
            "Collaboration cancelled",
            "The collaboration was cancelled"
            + (" and the payment refunded." if refunded else "."),
        )
    return refunded


async def _apply(
    uow: ConversationWrite,
    conversation: Conversation,
    role: str,
    actor: User | None,
    action: FlowAction,
    data: dict,
) -> dict:
    """Run one validated transition and its side effects inside ``uow``."""
    db = uow.db
    previous = conversation.flow_state
    order: PaymentOrder | None = None

    if action == FlowAction.PROCEED_TO_PAYMENT:
        from collab.services.payment import get_or_create_order

        order = await get_or_create_order(db, conversation)
        data = dict(data, order_id=order.external_order_id)

    try:
        new_state, flow_data = advance(previous, conversation.flow_data, action, role, data)
    except InvalidTransitionError as exc:
        raise FlowError(ErrorKind.INVALID_INPUT, str(exc))

    chat_status = conversation.chat_status
    if action == FlowAction.PAYMENT_CAPTURED:
        await _capture_funds(uow, conversation, data)
        chat_status = ChatStatus.REAL_TIME.value
    elif action in (FlowAction.APPROVE_WORK, FlowAction.AUTO_RELEASE):
        reason = "auto_release_timeout" if action == FlowAction.AUTO_RELEASE else "work_approved"
        await _release_funds(uow, conversation, reason)
    elif action in CANCEL_ACTIONS:
        await _cancel(uow, conversation, data.get("reason") or action.value)

    if new_state == FlowState.CHAT_CLOSED:
        chat_status = ChatStatus.CLOSED.value
    elif new_state == FlowState.COLLABORATION_CANCELLED:
        chat_status = ChatStatus.CANCELLED.value

    conversation.flow_state = new_state.value
    conversation.awaiting_role = awaiting_role(new_state)
    conversation.flow_data = flow_data
    conversation.chat_status = chat_status
    conversation.last_transition_at = utcnow()

    actor_id = actor.id if actor is not None and role in (Actor.BRAND_OWNER, Actor.INFLUENCER) else None
    if actor_id is not None:
        receiver_id = conversation.other_party(actor_id)
    else:
        receiver_id = _party_for(conversation, conversation.awaiting_role) or conversation.influencer_id

    record = {
        "action": action.value,
        "actor_role": role,
        "data": data,
        "from": previous,
        "to": new_state.value,
    }
    action_message = await messaging.append(
        db,
        conversation,
        text=_action_text(action, data, flow_data),
        sender_id=actor_id,
        receiver_id=receiver_id,
        message_type="system",
        transition=record,
        supersede=True,
    )
    messages = [action_message]

    envelope = build_envelope(
        new_state,
        flow_data,
        payment_order=_order_dict(order),
        min_amount=settings.min_amount,
        max_amount=settings.max_amount,
    )
    if envelope is not None:
        prompt = await messaging.append(
            db,
            conversation,
            text=envelope.title,
            sender_id=None,
            receiver_id=_party_for(conversation, conversation.awaiting_role),
            message_type="automated",
            action_data=dump_envelope(envelope),
        )
        messages.append(prompt)

    sender_name = actor.name if actor_id is not None else None
    for message in messages:
        await messaging.announce(
            db, uow.bundle, conversation, message,
            context=action.value, sender_name=sender_name,
        )
    uow.bundle.conversation_state_changed(
        conversation.id,
        {"previous": previous, "next": new_state.value, "reason": action.value},
    )
    logger.info(
        "Conversation %s: %s by %s (%s -> %s)",
        conversation.id, action.value, role, previous, new_state.value,
    )
    return _result(conversation, messages[-1].id, order)


async def _previous_result(db: AsyncSession, conversation: Conversation, digest: str) -> dict | None:
    result = await db.execute(
        select(ActionReceipt)
        .where(ActionReceipt.conversation_id == conversation.id)
        .order_by(ActionReceipt.id.desc())
        .limit(1)
    )
    receipt = result.scalar_one_or_none()
    if receipt and receipt.action_hash == digest and receipt.to_state == conversation.flow_state:
        return receipt.result
    return None


async def perform_action(
    db: AsyncSession,
    conversation_id: int,
    user: User | None,
    action: str,
    data: dict | None = None,
    *,
    system: bool = False,
) -> dict:
    """Apply ``action`` for ``user`` (or the system) to a conversation.

    Repeating the most recent accepted action with identical input returns
    the stored result without side effects.
    """
    try:
        flow_action = FlowAction(action)
    except ValueError:
        raise FlowError(ErrorKind.INVALID_INPUT, f"Unknown action: {action}")
    if flow_action == FlowAction.PAYMENT_CAPTURED:
        # Only a verified gateway payment moves money in: see capture_payment
        raise FlowError(ErrorKind.INVALID_INPUT, "Payments are recorded by the payment gateway")
    data = dict(data or {})

    async with conversation_write(db, conversation_id) as uow:
        conversation = await get_conversation(db, conversation_id)
        role = _resolve_role(conversation, user, flow_action, system)
        actor_id = user.id if user is not None and not system else None
        digest = action_hash(flow_action.value, data, actor_id)

        replayed = await _previous_result(db, conversation, digest)
        if replayed is not None:
            logger.info("Conversation %s: repeated %s answered from receipt", conversation_id, action)
            return replayed

        _check_turn(conversation, role)
        previous = conversation.flow_state
        result = await _apply(
            uow, conversation, role, user, flow_action, _clean_data(flow_action, data),
        )
        db.add(
            ActionReceipt(
                conversation_id=conversation.id,
                actor_id=actor_id,
                action=flow_action.value,
                action_hash=digest,
                from_state=previous,
                to_state=conversation.flow_state,
                result=result,
            )
        )
    return result


async def _refund_late_capture(
    uow: ConversationWrite,
    conversation: Conversation,
    order: PaymentOrder,
    payment_id: str,
    via: str,
) -> None:
    """Credit a payment that arrived after its order was closed back to the payer."""
    db = uow.db
    order.external_payment_id = payment_id
    order.verified_at = datetime.now(timezone.utc)
    order.verified_via = via
    order.meta = dict(order.meta or {}, late_capture="refunded")
    await uow.lock_wallets(order.payer_id)
    await ledger.credit(
        db,
        order.payer_id,
        order.amount_paise,
        stage="refund",
        external_payment_id=payment_id,
        note="payment_after_cancellation",
    )
    await log_audit(
        db,
        action="late_payment_refunded",
        entity_type="payment_order",
        entity_id=order.id,
        user_id=order.payer_id,
        details={
            "conversation_id": conversation.id,
            "amount_paise": order.amount_paise,
            "payment_id": payment_id,
        },
    )
    await _milestone(
        uow, conversation, order.payer_id, "payment_refunded",
        "Payment refunded",
        f"₹{order.amount_paise // 100} was returned to your wallet because the "
        "collaboration had already been cancelled.",
    )
    logger.warning(
        "Payment %s arrived for closed order %s; refunded to user %s",
        payment_id, order.external_order_id, order.payer_id,
    )


async def capture_payment(
    db: AsyncSession,
    external_order_id: str,
    payment_id: str,
    *,
    via: str,
    admin: User | None = None,
    amount_paise: int | None = None,
) -> tuple[PaymentOrder, bool]:
    """Record a captured payment and move the conversation to work.

    Idempotent on ``payment_id``: returns ``(order, True)`` when the
    payment was already applied. A payment for an order closed by
    cancellation is credited back to the payer's wallet instead.
    """
    from collab.services.payment import get_order_by_external

    order = await get_order_by_external(db, external_order_id)
    conversation_id = order.conversation_id
    already = False

    async with conversation_write(db, conversation_id) as uow:
        await db.refresh(order)
        if order.external_payment_id == payment_id:
            already = True
        elif order.external_payment_id is not None:
            raise FlowError(
                ErrorKind.DUPLICATE,
                "Order was already paid by a different payment",
                resource={"order_id": order.external_order_id},
            )
        elif await escrow.get_by_payment(db, payment_id) is not None:
            already = True
        else:
            if amount_paise is not None and amount_paise != order.amount_paise:
                raise FlowError(
                    ErrorKind.INVALID_INPUT,
                    f"Captured amount {amount_paise} does not match order amount {order.amount_paise}",
                )
            conversation = await get_conversation(db, conversation_id)
            if order.status == "failed":
                await _refund_late_capture(uow, conversation, order, payment_id, via)
                return order, False
            if conversation.flow_state != FlowState.PAYMENT_PENDING:
                raise FlowError(
                    ErrorKind.INVALID_INPUT,
                    f"Conversation is {conversation.flow_state}, not awaiting payment",
                )
            order.status = "verified"
            order.external_payment_id = payment_id
            order.verified_at = datetime.now(timezone.utc)
            order.verified_via = via
            role = Actor.ADMIN.value if admin is not None else Actor.SYSTEM.value
            await _apply(
                uow,
                conversation,
                role,
                admin,
                FlowAction.PAYMENT_CAPTURED,
                {
                    "payment_id": payment_id,
                    "order_id": order.external_order_id,
                    "amount_paise": order.amount_paise,
                },
            )
    if already:
        logger.info("Payment %s already applied to order %s", payment_id, external_order_id)
    return order, already


async def auto_release(db: AsyncSession, conversation_id: int) -> dict:
    return await perform_action(db, conversation_id, None, FlowAction.AUTO_RELEASE, system=True)


async def express_interest(
    db: AsyncSession,
    user: User,
    influencer_id: int,
    amount: int,
    *,
    campaign_id: int | None = None,
    bid_id: int | None = None,
    message: str | None = None,
    max_revokes: int | None = None,
) -> tuple[Conversation, bool]:
    """Open (or reuse) the conversation for the triple and send the request.

    Returns ``(conversation, is_existing)``; an existing conversation that
    has already left ``initial`` is returned untouched.
    """
    influencer = (
        await db.execute(select(User).where(User.id == influencer_id))
    ).scalar_one_or_none()
    if influencer is None:
        raise FlowError(ErrorKind.NOT_FOUND, "Influencer not found")
    if user.role != "brand_owner" or influencer.role != "influencer":
        raise FlowError(
            ErrorKind.INVALID_INPUT,
            "Interest is expressed by a brand owner in an influencer",
        )

    conversation, _ = await get_or_create(
        db, user.id, influencer_id, campaign_id=campaign_id, bid_id=bid_id,
    )
    if conversation.flow_state != FlowState.INITIAL:
        return conversation, True

    await perform_action(
        db,
        conversation.id,
        user,
        FlowAction.EXPRESS_INTEREST,
        {"amount": amount, "max_revokes": max_revokes, "message": message},
    )
    await db.refresh(conversation)
    return conversation, False


async def direct_connect(
    db: AsyncSession, user: User, target_user_id: int, initial_message: str | None = None,
) -> tuple[Conversation, bool]:
    """Open the pair's direct conversation; returns ``(conversation, is_existing)``."""
    target = (
        await db.execute(select(User).where(User.id == target_user_id))
    ).scalar_one_or_none()
    if target is None:
        raise FlowError(ErrorKind.NOT_FOUND, "User not found")

    if user.role == "brand_owner" and target.role == "influencer":
        brand_owner_id, influencer_id = user.id, target.id
    elif user.role == "influencer" and target.role == "brand_owner":
        brand_owner_id, influencer_id = target.id, user.id
    else:
        raise FlowError(
            ErrorKind.INVALID_INPUT,
            "Direct conversations connect a brand owner with an influencer",
        )

    conversation, created = await get_or_create(db, brand_owner_id, influencer_id)
    if created and initial_message and initial_message.strip():
        await messaging.send_chat_message(db, conversation.id, user, initial_message)
        await db.refresh(conversation)
    return conversation, not created


async def handle_text_input(
    db: AsyncSession, conversation_id: int, user: User, text: str, input_type: str,
) -> dict:
    """Route typed input to the flow action it stands for, else to chat."""
    conversation = await get_for_party(db, conversation_id, user)
    role = role_in(conversation, user.id)
    action = action_for_text_input(conversation.flow_state, role, input_type) if role else None

    if action in AMOUNT_ACTIONS:
        return await perform_action(db, conversation_id, user, action, {"amount": parse_amount(text)})
    if action == FlowAction.SEND_PROJECT_DETAILS:
        return await perform_action(db, conversation_id, user, action, {"text": text})

    message = await messaging.send_chat_message(db, conversation_id, user, text)
    await db.refresh(conversation)
    return _result(conversation, message.id)
