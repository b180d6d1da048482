from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from collab.core.config import settings


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    id: int
    conversation_id: int
    sender_id: int | None
    receiver_id: int | None
    text: str
    media_url: str | None = None
    message_type: str
    action_required: bool
    action_data: dict[str, Any] | None = None
    client_nonce: str | None = None
    seen: bool
    seen_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class MessageCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)
    media_url: str | None = Field(default=None, max_length=1024)
    client_nonce: str | None = Field(default=None, max_length=64)


class MessagePage(BaseModel):
    items: list[MessageResponse]
    page: int
    limit: int
    total: int


class SeenResponse(BaseModel):
    updated: int
    unread_count: int


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class ConversationResponse(BaseModel):
    id: int
    brand_owner_id: int
    influencer_id: int
    campaign_id: int | None = None
    bid_id: int | None = None
    chat_status: str
    flow_state: str
    awaiting_role: str | None
    flow_data: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ConversationListItem(ConversationResponse):
    unread_count: int = 0
    last_message: MessageResponse | None = None


class EscrowHoldResponse(BaseModel):
    id: int
    amount_paise: int
    status: str
    release_reason: str | None = None
    created_at: datetime
    released_at: datetime | None = None

    model_config = {"from_attributes": True}


class PaymentOrderResponse(BaseModel):
    id: int
    conversation_id: int
    amount_paise: int
    currency: str
    status: str
    external_order_id: str
    external_payment_id: str | None = None
    verified_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ConversationDetail(ConversationResponse):
    my_role: str
    available_actions: list[str]
    escrow_hold: EscrowHoldResponse | None = None
    payment_order: PaymentOrderResponse | None = None


class ExpressInterestRequest(BaseModel):
    influencer_id: int
    amount: int
    campaign_id: int | None = None
    bid_id: int | None = None
    message: str | None = Field(default=None, max_length=2000)
    max_revokes: int | None = None

    @field_validator("amount")
    @classmethod
    def _amount_in_range(cls, v: int) -> int:
        if not settings.min_amount <= v <= settings.max_amount:
            raise ValueError(
                f"amount must be between {settings.min_amount} and {settings.max_amount}"
            )
        return v

    @field_validator("max_revokes")
    @classmethod
    def _revokes_in_range(cls, v: int | None) -> int | None:
        if v is not None and not 1 <= v <= settings.max_revokes_limit:
            raise ValueError(f"max_revokes must be between 1 and {settings.max_revokes_limit}")
        return v


class DirectConnectRequest(BaseModel):
    target_user_id: int
    initial_message: str | None = Field(default=None, max_length=2000)


class ConversationCreated(BaseModel):
    conversation: ConversationResponse
    is_existing: bool = False


class ButtonClickRequest(BaseModel):
    button_id: str = Field(..., min_length=1, max_length=64)
    data: dict[str, Any] | None = None


class TextInputRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)
    input_type: Literal["negotiation", "question", "response", "general"] = "general"


class FlowResult(BaseModel):
    conversation_id: int
    state: str
    awaiting_role: str | None
    chat_status: str
    message_id: int | None = None
    payment_order: PaymentOrderResponse | None = None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentOrderCreate(BaseModel):
    conversation_id: int


class PaymentCheckout(BaseModel):
    order: PaymentOrderResponse
    key_id: str


class PaymentVerifyRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=64)
    payment_id: str = Field(..., min_length=1, max_length=64)
    signature: str = Field(..., min_length=1, max_length=256)


class PaymentVerifyResponse(BaseModel):
    verified: bool
    already_processed: bool = False
    order: PaymentOrderResponse


class AdminCaptureRequest(BaseModel):
    payment_id: str = Field(..., min_length=1, max_length=64)


# ---------------------------------------------------------------------------
# Notifications & devices
# ---------------------------------------------------------------------------


class NotificationResponse(BaseModel):
    id: int
    type: str
    title: str
    body: str
    data: dict[str, Any] | None = None
    action_url: str | None = None
    status: str
    read_at: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationPage(BaseModel):
    items: list[NotificationResponse]
    page: int
    limit: int
    total: int


class CountResponse(BaseModel):
    count: int


class DeviceRegister(BaseModel):
    token: str = Field(..., min_length=8, max_length=512)
    platform: Literal["android", "ios", "web"]


class DeviceResponse(BaseModel):
    id: int
    token: str
    platform: str
    active: bool
    last_seen: datetime | None = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Wallet
# ---------------------------------------------------------------------------


class WalletResponse(BaseModel):
    total_paise: int
    frozen_paise: int
    available_paise: int


class TransactionResponse(BaseModel):
    id: int
    amount_paise: int
    direction: str
    stage: str
    status: str
    conversation_id: int | None = None
    escrow_hold_id: int | None = None
    external_payment_id: str | None = None
    note: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WithdrawRequest(BaseModel):
    amount_paise: int = Field(..., gt=0)
