"""
Per-state payloads stored in ``Booking.state_data``.

Each variant is tagged by the lifecycle state it belongs to, so a payload can
only be written together with the matching ``current_state``.
"""
import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _StateData(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PendingConfirmationData(_StateData):
    state: Literal["SCHEDULED_PENDING_CONFIRMATION"] = "SCHEDULED_PENDING_CONFIRMATION"
    proposed_event_ref: Optional[str] = None
    released_reason: Optional[str] = None


class ScheduleConfirmedData(_StateData):
    state: Literal["SCHEDULE_CONFIRMED"] = "SCHEDULE_CONFIRMED"
    confirmed_at: datetime
    invitee_ref: Optional[str] = None


class PaymentPendingData(_StateData):
    state: Literal["PAYMENT_PENDING"] = "PAYMENT_PENDING"
    attempt: int


class PaymentProcessingData(_StateData):
    state: Literal["PAYMENT_PROCESSING"] = "PAYMENT_PROCESSING"
    attempt: int
    checkout_url: Optional[str] = None


class PaymentFailedData(_StateData):
    state: Literal["PAYMENT_FAILED"] = "PAYMENT_FAILED"
    attempt: int
    failure_reason: Optional[str] = None


class PriceAdjustment(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: Literal["charge", "refund"]
    amount: int
    new_amount: int
    new_session_type_id: int
    new_start: datetime
    new_end: datetime
    new_event_ref: str
    payment_reference: Optional[str] = None
    checkout_url: Optional[str] = None
    refund_id: Optional[str] = None
    refund_payment_id: Optional[int] = None


class BookingConfirmedData(_StateData):
    state: Literal["BOOKING_CONFIRMED"] = "BOOKING_CONFIRMED"
    confirmed_at: datetime
    reschedule_count: int = 0
    pending_adjustment: Optional[PriceAdjustment] = None


class BookingCancelledData(_StateData):
    state: Literal["BOOKING_CANCELLED"] = "BOOKING_CANCELLED"
    requested_refund_amount: Optional[int] = None
    refund_error: Optional[str] = None


class RefundPart(BaseModel):
    refund_id: str
    payment_id: int
    amount: int
    status: Literal["pending", "succeeded", "failed"] = "pending"


class RefundPendingData(_StateData):
    state: Literal["REFUND_PENDING"] = "REFUND_PENDING"
    refund_amount: int
    parts: list[RefundPart] = Field(default_factory=list)
    refund_error: Optional[str] = None


class RefundCompletedData(_StateData):
    state: Literal["REFUND_COMPLETED"] = "REFUND_COMPLETED"
    refund_amount: int
    refund_ids: list[str] = Field(default_factory=list)
    completed_at: datetime


class ErrorData(_StateData):
    state: Literal["ERROR_SCHEDULING", "ERROR_PAYMENT", "ERROR_WEBHOOK"]
    error_code: str
    message: str
    recoverable: bool = True
    resume_state: str
    resume_payment_status: str
    recovery_attempts: int = 0
    payment_reference: Optional[str] = None
    proposed_event_ref: Optional[str] = None
    occurred_at: datetime


class RecoveryData(_StateData):
    state: Literal["ERROR_RECOVERY"] = "ERROR_RECOVERY"
    error_state: Optional[str] = None
    resume_state: Optional[str] = None
    resume_payment_status: Optional[str] = None
    recovery_attempts: int = 0
    payment_reference: Optional[str] = None
    manual_intervention: bool = False
    # released bookings gave their slot back and are never resumed
    released: bool = False
    reason: Optional[str] = None


StateData = Annotated[
    Union[
        PendingConfirmationData,
        ScheduleConfirmedData,
        PaymentPendingData,
        PaymentProcessingData,
        PaymentFailedData,
        BookingConfirmedData,
        BookingCancelledData,
        RefundPendingData,
        RefundCompletedData,
        ErrorData,
        RecoveryData,
    ],
    Field(discriminator="state"),
]

_adapter = TypeAdapter(StateData)


def load_state_data(raw: Optional[dict[str, Any]]):
    if not raw:
        return None
    return _adapter.validate_python(raw)


def dump_state_data(data) -> Optional[dict[str, Any]]:
    if data is None:
        return None
    return data.model_dump(mode="json")
