"""Collaboration flow state machine: pure logic, no DB dependency.

Defines the conversation lifecycle, allowed transitions, actors, the
``flow_data`` bookkeeping each action performs, and a replay helper that
recomputes a conversation's state from its recorded transitions.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from collab.core.errors import ErrorKind, FlowError


class FlowState(StrEnum):
    INITIAL = "initial"
    INFLUENCER_RESPONDING = "influencer_responding"
    INFLUENCER_REVIEWING = "influencer_reviewing"
    INFLUENCER_PRICE_RESPONSE = "influencer_price_response"
    BRAND_OWNER_PRICING = "brand_owner_pricing"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETED = "payment_completed"
    WORK_IN_PROGRESS = "work_in_progress"
    WORK_SUBMITTED = "work_submitted"
    WORK_REVISION_REQUESTED = "work_revision_requested"
    WORK_APPROVED = "work_approved"
    CHAT_CLOSED = "chat_closed"
    COLLABORATION_CANCELLED = "collaboration_cancelled"


class FlowAction(StrEnum):
    EXPRESS_INTEREST = "express_interest"
    ACCEPT_CONNECTION = "accept_connection"
    REJECT_CONNECTION = "reject_connection"
    SEND_PROJECT_DETAILS = "send_project_details"
    ACCEPT_PRICE = "accept_price"
    NEGOTIATE_PRICE = "negotiate_price"
    SEND_PRICE_OFFER = "send_price_offer"
    REJECT_PRICE = "reject_price"
    PROCEED_TO_PAYMENT = "proceed_to_payment"
    PAYMENT_CAPTURED = "payment_captured"
    START_WORK = "start_work"
    SUBMIT_WORK = "submit_work"
    RESUBMIT_WORK = "resubmit_work"
    APPROVE_WORK = "approve_work"
    REQUEST_REVISION = "request_revision"
    CLOSE_CHAT = "close_chat"
    AUTO_RELEASE = "auto_release"
    REJECT_COLLABORATION = "reject_collaboration"


class Actor(StrEnum):
    BRAND_OWNER = "brand_owner"
    INFLUENCER = "influencer"
    SYSTEM = "system"
    ADMIN = "admin"


class ChatStatus(StrEnum):
    AUTOMATED = "automated"
    REAL_TIME = "real_time"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class InvalidTransitionError(Exception):
    """Raised when a flow transition is not allowed."""

    def __init__(self, current: str, action: str, actor: str | None = None):
        self.current = current
        self.action = action
        self.actor = actor
        msg = f"Invalid transition: {current} + {action}"
        if actor:
            msg += f" by {actor}"
        super().__init__(msg)


_BO = frozenset({Actor.BRAND_OWNER})
_INF = frozenset({Actor.INFLUENCER})
_SYS = frozenset({Actor.SYSTEM})

# Mapping: (current_state, action) → (new_state, frozenset_of_allowed_actors)
TRANSITIONS: dict[tuple[FlowState, FlowAction], tuple[FlowState, frozenset[Actor]]] = {
    # Connection
    (FlowState.INITIAL, FlowAction.EXPRESS_INTEREST): (
        FlowState.INFLUENCER_RESPONDING, _BO,
    ),
    (FlowState.INFLUENCER_RESPONDING, FlowAction.ACCEPT_CONNECTION): (
        FlowState.INFLUENCER_REVIEWING, _INF,
    ),
    (FlowState.INFLUENCER_RESPONDING, FlowAction.REJECT_CONNECTION): (
        FlowState.COLLABORATION_CANCELLED, _INF,
    ),
    (FlowState.INFLUENCER_REVIEWING, FlowAction.SEND_PROJECT_DETAILS): (
        FlowState.INFLUENCER_PRICE_RESPONSE, _BO,
    ),
    # Negotiation
    (FlowState.INFLUENCER_PRICE_RESPONSE, FlowAction.ACCEPT_PRICE): (
        FlowState.PAYMENT_PENDING, _INF,
    ),
    (FlowState.INFLUENCER_PRICE_RESPONSE, FlowAction.NEGOTIATE_PRICE): (
        FlowState.BRAND_OWNER_PRICING, _INF,
    ),
    (FlowState.INFLUENCER_PRICE_RESPONSE, FlowAction.REJECT_PRICE): (
        FlowState.COLLABORATION_CANCELLED, _INF,
    ),
    (FlowState.BRAND_OWNER_PRICING, FlowAction.SEND_PRICE_OFFER): (
        FlowState.INFLUENCER_PRICE_RESPONSE, _BO,
    ),
    (FlowState.BRAND_OWNER_PRICING, FlowAction.REJECT_PRICE): (
        FlowState.COLLABORATION_CANCELLED, _BO,
    ),
    # Payment
    (FlowState.PAYMENT_PENDING, FlowAction.PROCEED_TO_PAYMENT): (
        FlowState.PAYMENT_PENDING, frozenset({Actor.BRAND_OWNER, Actor.ADMIN}),
    ),
    (FlowState.PAYMENT_PENDING, FlowAction.PAYMENT_CAPTURED): (
        FlowState.PAYMENT_COMPLETED, frozenset({Actor.SYSTEM, Actor.ADMIN}),
    ),
    (FlowState.PAYMENT_COMPLETED, FlowAction.START_WORK): (
        FlowState.WORK_IN_PROGRESS, _SYS,
    ),
    # Work
    (FlowState.WORK_IN_PROGRESS, FlowAction.SUBMIT_WORK): (
        FlowState.WORK_SUBMITTED, _INF,
    ),
    (FlowState.WORK_SUBMITTED, FlowAction.APPROVE_WORK): (
        FlowState.WORK_APPROVED, _BO,
    ),
    (FlowState.WORK_SUBMITTED, FlowAction.REQUEST_REVISION): (
        FlowState.WORK_REVISION_REQUESTED, _BO,
    ),
    (FlowState.WORK_REVISION_REQUESTED, FlowAction.RESUBMIT_WORK): (
        FlowState.WORK_SUBMITTED, _INF,
    ),
    (FlowState.WORK_APPROVED, FlowAction.CLOSE_CHAT): (
        FlowState.CHAT_CLOSED, _SYS,
    ),
    # Escrow quiescence timeout
    (FlowState.WORK_IN_PROGRESS, FlowAction.AUTO_RELEASE): (
        FlowState.CHAT_CLOSED, _SYS,
    ),
    (FlowState.WORK_SUBMITTED, FlowAction.AUTO_RELEASE): (
        FlowState.CHAT_CLOSED, _SYS,
    ),
    (FlowState.WORK_REVISION_REQUESTED, FlowAction.AUTO_RELEASE): (
        FlowState.CHAT_CLOSED, _SYS,
    ),
    # Cancellation by whoever holds the turn
    (FlowState.INITIAL, FlowAction.REJECT_COLLABORATION): (
        FlowState.COLLABORATION_CANCELLED, _BO,
    ),
    (FlowState.INFLUENCER_REVIEWING, FlowAction.REJECT_COLLABORATION): (
        FlowState.COLLABORATION_CANCELLED, _BO,
    ),
    (FlowState.PAYMENT_PENDING, FlowAction.REJECT_COLLABORATION): (
        FlowState.COLLABORATION_CANCELLED, _BO,
    ),
    # Post-payment withdrawal refunds the brand owner
    (FlowState.WORK_IN_PROGRESS, FlowAction.REJECT_COLLABORATION): (
        FlowState.COLLABORATION_CANCELLED, _INF,
    ),
    (FlowState.WORK_REVISION_REQUESTED, FlowAction.REJECT_COLLABORATION): (
        FlowState.COLLABORATION_CANCELLED, _INF,
    ),
}

TERMINAL_STATES: frozenset[FlowState] = frozenset({
    FlowState.CHAT_CLOSED,
    FlowState.COLLABORATION_CANCELLED,
})

# Role whose turn it is once a state has been entered
AWAITING: dict[FlowState, Actor | None] = {
    FlowState.INITIAL: Actor.BRAND_OWNER,
    FlowState.INFLUENCER_RESPONDING: Actor.INFLUENCER,
    FlowState.INFLUENCER_REVIEWING: Actor.BRAND_OWNER,
    FlowState.INFLUENCER_PRICE_RESPONSE: Actor.INFLUENCER,
    FlowState.BRAND_OWNER_PRICING: Actor.BRAND_OWNER,
    FlowState.PAYMENT_PENDING: Actor.BRAND_OWNER,
    FlowState.PAYMENT_COMPLETED: Actor.INFLUENCER,
    FlowState.WORK_IN_PROGRESS: Actor.INFLUENCER,
    FlowState.WORK_SUBMITTED: Actor.BRAND_OWNER,
    FlowState.WORK_REVISION_REQUESTED: Actor.INFLUENCER,
    FlowState.WORK_APPROVED: None,
    FlowState.CHAT_CLOSED: None,
    FlowState.COLLABORATION_CANCELLED: None,
}

# Transient states are left by a system action inside the same write
AUTO_ADVANCE: dict[FlowState, FlowAction] = {
    FlowState.PAYMENT_COMPLETED: FlowAction.START_WORK,
    FlowState.WORK_APPROVED: FlowAction.CLOSE_CHAT,
}

# Actions the admin may drive regardless of whose turn it is
PAYMENT_ACTIONS: frozenset[FlowAction] = frozenset({
    FlowAction.PROCEED_TO_PAYMENT,
    FlowAction.PAYMENT_CAPTURED,
})

AMOUNT_ACTIONS: frozenset[FlowAction] = frozenset({
    FlowAction.EXPRESS_INTEREST,
    FlowAction.NEGOTIATE_PRICE,
    FlowAction.SEND_PRICE_OFFER,
})

CANCEL_ACTIONS: frozenset[FlowAction] = frozenset({
    FlowAction.REJECT_CONNECTION,
    FlowAction.REJECT_PRICE,
    FlowAction.REJECT_COLLABORATION,
})

DEFAULT_MAX_REVOKES = 3


def validate_transition(current: str, action: str, actor: str) -> FlowState:
    """Validate and return the new state for a transition.

    Raises InvalidTransitionError if the transition is not allowed.
    """
    try:
        current_state = FlowState(current)
        flow_action = FlowAction(action)
        flow_actor = Actor(actor)
    except ValueError:
        raise InvalidTransitionError(current, action, actor)

    key = (current_state, flow_action)
    if key not in TRANSITIONS:
        raise InvalidTransitionError(current, action, actor)

    new_state, allowed_actors = TRANSITIONS[key]
    if flow_actor not in allowed_actors:
        raise InvalidTransitionError(current, action, actor)

    return new_state


def awaiting_role(state: str) -> str | None:
    role = AWAITING[FlowState(state)]
    return role.value if role else None


def is_terminal(state: str) -> bool:
    return FlowState(state) in TERMINAL_STATES


def get_available_actions(current: str, actor: str) -> list[str]:
    """Return list of action names available for the given state and actor."""
    try:
        current_state = FlowState(current)
        actor_enum = Actor(actor)
    except ValueError:
        return []

    if current_state in TERMINAL_STATES:
        return []

    return [
        action.value
        for (state, action), (_, allowed_actors) in TRANSITIONS.items()
        if state == current_state and actor_enum in allowed_actors
    ]


def action_for_text_input(state: str, actor: str, input_type: str) -> FlowAction | None:
    """Map a free-text submission to the flow action it stands for, if any."""
    if input_type == "negotiation":
        if state == FlowState.INFLUENCER_PRICE_RESPONSE and actor == Actor.INFLUENCER:
            return FlowAction.NEGOTIATE_PRICE
        if state == FlowState.BRAND_OWNER_PRICING and actor == Actor.BRAND_OWNER:
            return FlowAction.SEND_PRICE_OFFER
    if state == FlowState.INFLUENCER_REVIEWING and actor == Actor.BRAND_OWNER:
        return FlowAction.SEND_PROJECT_DETAILS
    return None


def _last_offer(history: list[dict], entry_type: str) -> int | None:
    for entry in reversed(history):
        if entry.get("type") == entry_type:
            return entry.get("amount")
    return None


def apply_flow_data(flow_data: dict | None, action: str, data: dict | None = None) -> dict:
    """Return the ``flow_data`` mapping that results from ``action``.

    Never mutates its input. Raises FlowError for guard failures
    (repeated counter-offer, revision cap).
    """
    fd: dict[str, Any] = dict(flow_data or {})
    fd["negotiation_history"] = list(fd.get("negotiation_history") or [])
    data = data or {}
    act = FlowAction(action)

    if act == FlowAction.EXPRESS_INTEREST:
        fd["current_amount"] = data["amount"]
        fd["revoke_count"] = 0
        fd["max_revokes"] = data.get("max_revokes", DEFAULT_MAX_REVOKES)
        if data.get("message"):
            fd["initial_message"] = data["message"]

    elif act == FlowAction.SEND_PROJECT_DETAILS:
        fd["project_details"] = data.get("text", "")

    elif act in (FlowAction.NEGOTIATE_PRICE, FlowAction.SEND_PRICE_OFFER):
        entry_type = (
            "influencer_counter" if act == FlowAction.NEGOTIATE_PRICE else "brand_offer"
        )
        amount = data["amount"]
        if _last_offer(fd["negotiation_history"], entry_type) == amount:
            raise FlowError(
                ErrorKind.INVALID_INPUT,
                f"Offer of {amount} repeats your previous offer",
            )
        fd["negotiation_history"].append({"type": entry_type, "amount": amount})
        fd["current_amount"] = amount

    elif act == FlowAction.ACCEPT_PRICE:
        amount = fd.get("current_amount")
        fd["negotiation_history"].append({"type": "influencer_accept", "amount": amount})
        fd["agreed_amount"] = amount

    elif act == FlowAction.PROCEED_TO_PAYMENT:
        if data.get("order_id"):
            fd["payment_order_id"] = data["order_id"]

    elif act == FlowAction.PAYMENT_CAPTURED:
        if data.get("payment_id"):
            fd["payment_id"] = data["payment_id"]

    elif act in (FlowAction.SUBMIT_WORK, FlowAction.RESUBMIT_WORK):
        fd["work_submission"] = {
            "link": data.get("link"),
            "files": list(data.get("files") or []),
            "note": data.get("note"),
        }

    elif act == FlowAction.REQUEST_REVISION:
        count = int(fd.get("revoke_count", 0)) + 1
        limit = int(fd.get("max_revokes", DEFAULT_MAX_REVOKES))
        if count > limit:
            raise FlowError(
                ErrorKind.REVISION_LIMIT_EXCEEDED,
                f"Revision limit of {limit} reached",
            )
        fd["revoke_count"] = count
        fd["revision_feedback"] = data.get("feedback")

    elif act in CANCEL_ACTIONS:
        if data.get("reason"):
            fd["cancel_reason"] = data["reason"]

    elif act == FlowAction.AUTO_RELEASE:
        fd["release_reason"] = "auto_release_timeout"

    return fd


@dataclass
class ReplayResult:
    flow_state: str = FlowState.INITIAL.value
    awaiting_role: str | None = Actor.BRAND_OWNER.value
    flow_data: dict = field(default_factory=dict)

    @property
    def agreed_amount(self) -> int | None:
        return self.flow_data.get("agreed_amount")


def advance(state: str, flow_data: dict, action: str, actor: str, data: dict | None = None) -> tuple[FlowState, dict]:
    """Apply one transition plus any automatic follow-up.

    Returns the state the conversation settles in and its new ``flow_data``.
    """
    new_state = validate_transition(state, action, actor)
    fd = apply_flow_data(flow_data, action, data)
    while new_state in AUTO_ADVANCE:
        follow_up = AUTO_ADVANCE[new_state]
        new_state = validate_transition(new_state, follow_up, Actor.SYSTEM)
        fd = apply_flow_data(fd, follow_up)
    return new_state, fd


def replay(transitions: Iterable[dict]) -> ReplayResult:
    """Recompute flow state from recorded transitions, oldest first.

    Each record carries ``action``, ``actor_role`` and ``data``.
    """
    result = ReplayResult()
    for record in transitions:
        new_state, fd = advance(
            result.flow_state,
            result.flow_data,
            record["action"],
            record["actor_role"],
            record.get("data"),
        )
        result.flow_state = new_state.value
        result.awaiting_role = awaiting_role(new_state)
        result.flow_data = fd
    return result
