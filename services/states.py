"""
Booking lifecycle states, payment statuses and the transition table.

The coordinator is the only writer of these values; everything here is pure
data so it can be checked without a database.
"""
from enum import Enum


class BookingState(str, Enum):
    IDLE = "IDLE"
    SESSION_TYPE_SELECTION = "SESSION_TYPE_SELECTION"
    SCHEDULING_IN_PROGRESS = "SCHEDULING_IN_PROGRESS"
    SCHEDULED_PENDING_CONFIRMATION = "SCHEDULED_PENDING_CONFIRMATION"
    SCHEDULE_CONFIRMED = "SCHEDULE_CONFIRMED"

    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"

    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_RESCHEDULED = "BOOKING_RESCHEDULED"

    REFUND_PENDING = "REFUND_PENDING"
    REFUND_COMPLETED = "REFUND_COMPLETED"

    ERROR_SCHEDULING = "ERROR_SCHEDULING"
    ERROR_PAYMENT = "ERROR_PAYMENT"
    ERROR_WEBHOOK = "ERROR_WEBHOOK"
    ERROR_RECOVERY = "ERROR_RECOVERY"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    FAILED = "FAILED"
    PAID = "PAID"
    EXEMPT = "EXEMPT"  # zero-price session types
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


S = BookingState
P = PaymentStatus

ERROR_STATES = frozenset({S.ERROR_SCHEDULING, S.ERROR_PAYMENT, S.ERROR_WEBHOOK})

TRANSITIONS = {
    S.IDLE: {S.SESSION_TYPE_SELECTION},
    S.SESSION_TYPE_SELECTION: {S.SCHEDULING_IN_PROGRESS},
    S.SCHEDULING_IN_PROGRESS: {S.SCHEDULED_PENDING_CONFIRMATION, S.ERROR_SCHEDULING},
    S.SCHEDULED_PENDING_CONFIRMATION: {
        S.SCHEDULE_CONFIRMED,
        S.ERROR_SCHEDULING,
        S.ERROR_RECOVERY,
    },
    S.SCHEDULE_CONFIRMED: {
        S.PAYMENT_PENDING,
        S.PAYMENT_PROCESSING,
        S.BOOKING_CONFIRMED,
        S.ERROR_RECOVERY,
    },
    S.PAYMENT_PENDING: {S.PAYMENT_PROCESSING, S.ERROR_PAYMENT},
    S.PAYMENT_PROCESSING: {S.PAYMENT_SUCCEEDED, S.PAYMENT_FAILED, S.ERROR_WEBHOOK},
    S.PAYMENT_SUCCEEDED: {S.BOOKING_CONFIRMED},
    S.PAYMENT_FAILED: {S.PAYMENT_PENDING, S.PAYMENT_PROCESSING, S.ERROR_RECOVERY},
    S.BOOKING_CONFIRMED: {S.BOOKING_CANCELLED, S.BOOKING_RESCHEDULED},
    S.BOOKING_RESCHEDULED: {S.BOOKING_CONFIRMED},
    S.BOOKING_CANCELLED: {S.REFUND_PENDING},
    S.REFUND_PENDING: {S.REFUND_COMPLETED, S.BOOKING_CANCELLED},
    S.REFUND_COMPLETED: set(),
    S.ERROR_SCHEDULING: {S.ERROR_RECOVERY},
    S.ERROR_PAYMENT: {S.ERROR_RECOVERY},
    S.ERROR_WEBHOOK: {S.ERROR_RECOVERY},
    # resume targets are checked against the recorded prior state instead
    S.ERROR_RECOVERY: {
        S.SCHEDULED_PENDING_CONFIRMATION,
        S.SCHEDULE_CONFIRMED,
        S.PAYMENT_PROCESSING,
        S.PAYMENT_FAILED,
        S.ERROR_SCHEDULING,
        S.ERROR_PAYMENT,
        S.ERROR_WEBHOOK,
    },
}

_PRE_PAYMENT = frozenset({P.UNPAID, P.EXEMPT})

VALID_PAYMENT_STATUSES = {
    S.IDLE: _PRE_PAYMENT,
    S.SESSION_TYPE_SELECTION: _PRE_PAYMENT,
    S.SCHEDULING_IN_PROGRESS: _PRE_PAYMENT,
    S.SCHEDULED_PENDING_CONFIRMATION: _PRE_PAYMENT,
    S.SCHEDULE_CONFIRMED: _PRE_PAYMENT,
    S.PAYMENT_PENDING: frozenset({P.PENDING}),
    S.PAYMENT_PROCESSING: frozenset({P.PENDING}),
    S.PAYMENT_SUCCEEDED: frozenset({P.PAID}),
    S.PAYMENT_FAILED: frozenset({P.FAILED}),
    S.BOOKING_CONFIRMED: frozenset({P.PAID, P.EXEMPT}),
    S.BOOKING_RESCHEDULED: frozenset({P.PAID, P.EXEMPT}),
    S.BOOKING_CANCELLED: frozenset({P.PAID, P.EXEMPT}),
    S.REFUND_PENDING: frozenset({P.PAID}),
    S.REFUND_COMPLETED: frozenset({P.REFUNDED, P.PARTIALLY_REFUNDED}),
    S.ERROR_SCHEDULING: _PRE_PAYMENT,
    S.ERROR_PAYMENT: frozenset({P.UNPAID, P.PENDING, P.FAILED}),
    S.ERROR_WEBHOOK: frozenset({P.UNPAID, P.EXEMPT, P.PENDING, P.FAILED}),
    S.ERROR_RECOVERY: frozenset({P.UNPAID, P.EXEMPT, P.PENDING, P.FAILED}),
}

# states a persisted booking may sit in before scheduling is confirmed
AWAITING_SCHEDULE = frozenset({S.SCHEDULED_PENDING_CONFIRMATION})


def can_transition(current, target) -> bool:
    return BookingState(target) in TRANSITIONS.get(BookingState(current), set())


def is_valid_pair(state, payment_status) -> bool:
    return PaymentStatus(payment_status) in VALID_PAYMENT_STATUSES[BookingState(state)]
