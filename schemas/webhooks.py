"""
Inbound provider webhook payloads.

Both providers send a JSON envelope whose event-type field selects the shape
of the rest; they are modelled as discriminated unions and validated before
any field is read.
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Payload(BaseModel):
    # providers add fields over time; unknown keys are ignored, known ones are strict
    model_config = ConfigDict(extra="ignore")


# ---------- Calendly ----------
class CalendlyTracking(_Payload):
    utm_source: Optional[str] = None
    utm_content: Optional[str] = None


class CalendlyScheduledEvent(_Payload):
    uri: str
    start_time: datetime
    end_time: datetime
    event_type: Optional[str] = None


class CalendlyInvitee(_Payload):
    uri: str
    email: Optional[str] = None
    name: Optional[str] = None
    timezone: Optional[str] = None
    rescheduled: bool = False
    # set on the invitee that replaces one moved inside Calendly
    old_invitee: Optional[str] = None
    tracking: CalendlyTracking = Field(default_factory=CalendlyTracking)
    scheduled_event: CalendlyScheduledEvent


class InviteeCreated(_Payload):
    event: Literal["invitee.created"]
    created_at: datetime
    payload: CalendlyInvitee


class InviteeCanceled(_Payload):
    event: Literal["invitee.canceled"]
    created_at: datetime
    payload: CalendlyInvitee


CalendlyEvent = Annotated[Union[InviteeCreated, InviteeCanceled], Field(discriminator="event")]

CALENDLY_EVENT_TYPES = frozenset({"invitee.created", "invitee.canceled"})


def calendly_event_id(event) -> str:
    # Calendly has no event id; the invitee URI is unique per booking action
    return f"{event.event}:{event.payload.uri}"


# ---------- Stripe ----------
class CheckoutSession(_Payload):
    id: str
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentIntent(_Payload):
    id: str
    amount: int = 0
    metadata: dict[str, str] = Field(default_factory=dict)
    last_payment_error: Optional[dict] = None


class Refund(_Payload):
    id: str
    amount: int
    status: str
    payment_intent: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class _CheckoutData(_Payload):
    object: CheckoutSession


class _PaymentIntentData(_Payload):
    object: PaymentIntent


class _RefundData(_Payload):
    object: Refund


class CheckoutCompleted(_Payload):
    id: str
    type: Literal["checkout.session.completed"]
    created: int
    data: _CheckoutData


class CheckoutExpired(_Payload):
    id: str
    type: Literal["checkout.session.expired"]
    created: int
    data: _CheckoutData


class PaymentFailed(_Payload):
    id: str
    type: Literal["payment_intent.payment_failed"]
    created: int
    data: _PaymentIntentData


class RefundEvent(_Payload):
    id: str
    type: Literal["refund.created", "refund.updated", "refund.failed"]
    created: int
    data: _RefundData


StripeEvent = Annotated[
    Union[CheckoutCompleted, CheckoutExpired, PaymentFailed, RefundEvent],
    Field(discriminator="type"),
]

STRIPE_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "checkout.session.expired",
    "payment_intent.payment_failed",
    "refund.created",
    "refund.updated",
    "refund.failed",
})

calendly_events = TypeAdapter(CalendlyEvent)
stripe_events = TypeAdapter(StripeEvent)
