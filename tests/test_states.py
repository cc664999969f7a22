from services.states import (
    ERROR_STATES,
    TRANSITIONS,
    VALID_PAYMENT_STATUSES,
    BookingState as S,
    PaymentStatus as P,
    can_transition,
    is_valid_pair,
)


def test_every_state_has_transitions_and_payment_statuses():
    assert len(S) == 18
    assert set(TRANSITIONS) == set(S)
    assert set(VALID_PAYMENT_STATUSES) == set(S)


def test_refund_completed_is_terminal():
    assert TRANSITIONS[S.REFUND_COMPLETED] == set()


def test_payment_never_starts_before_scheduling_is_confirmed():
    for state in (S.IDLE, S.SESSION_TYPE_SELECTION, S.SCHEDULING_IN_PROGRESS, S.SCHEDULED_PENDING_CONFIRMATION):
        for target in (S.PAYMENT_PENDING, S.PAYMENT_PROCESSING, S.PAYMENT_SUCCEEDED, S.BOOKING_CONFIRMED):
            assert not can_transition(state, target)
    assert can_transition(S.SCHEDULE_CONFIRMED, S.PAYMENT_PENDING)


def test_error_states_only_lead_to_recovery():
    for state in ERROR_STATES:
        assert TRANSITIONS[state] == {S.ERROR_RECOVERY}


def test_paid_is_only_persisted_with_confirmed_cancelled_or_refunding_states():
    paid_states = {state for state, statuses in VALID_PAYMENT_STATUSES.items() if P.PAID in statuses}
    assert paid_states == {
        S.PAYMENT_SUCCEEDED,
        S.BOOKING_CONFIRMED,
        S.BOOKING_RESCHEDULED,
        S.BOOKING_CANCELLED,
        S.REFUND_PENDING,
    }


def test_pairs_accept_plain_strings():
    assert is_valid_pair("BOOKING_CONFIRMED", "EXEMPT")
    assert not is_valid_pair("PAYMENT_PROCESSING", "PAID")
    assert not is_valid_pair("REFUND_COMPLETED", "PAID")
    assert can_transition("PAYMENT_FAILED", "PAYMENT_PENDING")
