"""Action envelopes carried by system messages in ``Message.action_data``.

Each envelope kind carries only the fields it needs; ``Envelope`` is a
discriminated union over ``kind`` so stored payloads round-trip through
``ENVELOPE_ADAPTER``. Envelopes tell a client what it may render. The flow
engine still re-validates every incoming action against the live state.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from collab.services.flow_state_machine import FlowAction, FlowState

ButtonStyle = Literal["primary", "success", "warning", "danger", "info"]
VisibleTo = Literal["brand_owner", "influencer", "both"]


class Button(BaseModel):
    id: str
    text: str
    style: ButtonStyle = "primary"
    action: str


class InputField(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["text", "number", "url", "textarea"] = "text"
    placeholder: str | None = None
    required: bool = True
    min: int | None = None
    max: int | None = None
    step: int | None = None
    max_length: int | None = Field(default=None, alias="maxLength")


class _EnvelopeBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    subtitle: str | None = None
    visible_to: VisibleTo
    buttons: list[Button] = Field(default_factory=list)
    input_field: InputField | None = None

    def actions(self) -> set[str]:
        return {b.action for b in self.buttons}


class ConnectionResponseEnvelope(_EnvelopeBase):
    kind: Literal["connection_response"] = "connection_response"
    amount: int


class ProjectDetailsEnvelope(_EnvelopeBase):
    kind: Literal["project_details"] = "project_details"


class PriceOfferEnvelope(_EnvelopeBase):
    kind: Literal["price_offer"] = "price_offer"
    amount: int
    project_details: str | None = None


class CounterOfferEnvelope(_EnvelopeBase):
    kind: Literal["counter_offer"] = "counter_offer"
    amount: int


class PaymentPromptEnvelope(_EnvelopeBase):
    kind: Literal["payment_prompt"] = "payment_prompt"
    amount: int
    context: dict[str, Any] | None = None  # {"payment_order": {...}} once created


class WorkSubmissionEnvelope(_EnvelopeBase):
    kind: Literal["work_submission"] = "work_submission"


class WorkReviewEnvelope(_EnvelopeBase):
    kind: Literal["work_review"] = "work_review"
    context: dict[str, Any]  # {"work_submission": {...}}
    revisions_left: int


class WorkRevisionEnvelope(_EnvelopeBase):
    kind: Literal["work_revision"] = "work_revision"
    feedback: str | None = None


Envelope = Annotated[
    ConnectionResponseEnvelope
    | ProjectDetailsEnvelope
    | PriceOfferEnvelope
    | CounterOfferEnvelope
    | PaymentPromptEnvelope
    | WorkSubmissionEnvelope
    | WorkReviewEnvelope
    | WorkRevisionEnvelope,
    Field(discriminator="kind"),
]

ENVELOPE_ADAPTER: TypeAdapter[Envelope] = TypeAdapter(Envelope)


def parse_envelope(raw: dict | None) -> Envelope | None:
    if not raw:
        return None
    return ENVELOPE_ADAPTER.validate_python(raw)


def dump_envelope(envelope: Envelope) -> dict:
    return envelope.model_dump(mode="json", by_alias=True, exclude_none=True)


def _button(action: FlowAction, text: str, style: ButtonStyle = "primary") -> Button:
    return Button(id=action.value, text=text, style=style, action=action.value)


def _amount_input(placeholder: str, min_amount: int, max_amount: int) -> InputField:
    return InputField(
        type="number", placeholder=placeholder, min=min_amount, max=max_amount, step=1,
    )


def build_envelope(
    state: str,
    flow_data: dict,
    *,
    payment_order: dict | None = None,
    min_amount: int = 1,
    max_amount: int = 10_000_000,
) -> Envelope | None:
    """Return the prompt for whoever acts next in ``state``, or None."""
    amount = flow_data.get("current_amount") or 0
    match FlowState(state):
        case FlowState.INFLUENCER_RESPONDING:
            return ConnectionResponseEnvelope(
                title="New collaboration request",
                subtitle=f"Offered budget: ₹{amount}",
                visible_to="influencer",
                amount=amount,
                buttons=[
                    _button(FlowAction.ACCEPT_CONNECTION, "Accept", "success"),
                    _button(FlowAction.REJECT_CONNECTION, "Decline", "danger"),
                ],
            )
        case FlowState.INFLUENCER_REVIEWING:
            return ProjectDetailsEnvelope(
                title="Share the project details",
                subtitle="Describe deliverables, timelines and references",
                visible_to="brand_owner",
                buttons=[
                    _button(FlowAction.SEND_PROJECT_DETAILS, "Send details"),
                    _button(FlowAction.REJECT_COLLABORATION, "Cancel", "danger"),
                ],
                input_field=InputField(
                    type="textarea", placeholder="Project details", max_length=2000,
                ),
            )
        case FlowState.INFLUENCER_PRICE_RESPONSE:
            return PriceOfferEnvelope(
                title=f"Price offer: ₹{amount}",
                subtitle="Accept the offer or propose your price",
                visible_to="influencer",
                amount=amount,
                project_details=flow_data.get("project_details"),
                buttons=[
                    _button(FlowAction.ACCEPT_PRICE, "Accept", "success"),
                    _button(FlowAction.NEGOTIATE_PRICE, "Request changes", "warning"),
                    _button(FlowAction.REJECT_PRICE, "Decline", "danger"),
                ],
                input_field=_amount_input("Your price (₹)", min_amount, max_amount),
            )
        case FlowState.BRAND_OWNER_PRICING:
            return CounterOfferEnvelope(
                title=f"Counter-offer: ₹{amount}",
                subtitle="Send a new offer or end the negotiation",
                visible_to="brand_owner",
                amount=amount,
                buttons=[
                    _button(FlowAction.SEND_PRICE_OFFER, "Send offer"),
                    _button(FlowAction.REJECT_PRICE, "Decline", "danger"),
                ],
                input_field=_amount_input("Your offer (₹)", min_amount, max_amount),
            )
        case FlowState.PAYMENT_PENDING:
            agreed = flow_data.get("agreed_amount") or amount
            return PaymentPromptEnvelope(
                title=f"Price agreed: ₹{agreed}",
                subtitle="Complete the payment to start the work",
                visible_to="brand_owner",
                amount=agreed,
                context={"payment_order": payment_order} if payment_order else None,
                buttons=[
                    _button(FlowAction.PROCEED_TO_PAYMENT, "Proceed to payment", "success"),
                    _button(FlowAction.REJECT_COLLABORATION, "Cancel", "danger"),
                ],
            )
        case FlowState.WORK_IN_PROGRESS:
            return WorkSubmissionEnvelope(
                title="Payment received, work can begin",
                subtitle="Submit a link to the finished work",
                visible_to="influencer",
                buttons=[_button(FlowAction.SUBMIT_WORK, "Submit work", "success")],
                input_field=InputField(type="url", placeholder="https://…"),
            )
        case FlowState.WORK_SUBMITTED:
            left = int(flow_data.get("max_revokes", 0)) - int(flow_data.get("revoke_count", 0))
            buttons = [_button(FlowAction.APPROVE_WORK, "Approve", "success")]
            if left > 0:
                buttons.append(_button(FlowAction.REQUEST_REVISION, "Request revision", "warning"))
            return WorkReviewEnvelope(
                title="Work submitted for review",
                subtitle=f"{max(left, 0)} revision(s) left",
                visible_to="brand_owner",
                context={"work_submission": flow_data.get("work_submission") or {}},
                revisions_left=max(left, 0),
                buttons=buttons,
                input_field=InputField(
                    type="textarea", placeholder="Revision feedback", required=False,
                    max_length=2000,
                ),
            )
        case FlowState.WORK_REVISION_REQUESTED:
            return WorkRevisionEnvelope(
                title="Revision requested",
                subtitle=flow_data.get("revision_feedback"),
                visible_to="influencer",
                feedback=flow_data.get("revision_feedback"),
                buttons=[_button(FlowAction.RESUBMIT_WORK, "Resubmit work", "success")],
                input_field=InputField(type="url", placeholder="https://…"),
            )
        case _:
            return None
