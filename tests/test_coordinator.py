import json
from datetime import timedelta

import pytest

from adapters.payments import CheckoutStatus
from models import AuditLog, Booking, BufferedWebhook, Payment, db
from services.errors import (
    ConcurrentUpdateError,
    InvalidRefundAmount,
    InvalidTimeSlot,
    ManualInterventionRequired,
    NotFoundError,
    SessionTypeInactive,
    StaleStateError,
    TransientProviderError,
    ValidationError,
)
from services.states import BookingState
from tests.conftest import BUILDER, CLIENT, EVENT_REF, slot, slot_in
from utils.clock import utcnow

OTHER_EVENT = "https://api.calendly.com/scheduled_events/EV2"


def transitions(booking_id):
    rows = (
        AuditLog.query.filter_by(action="BOOKING_TRANSITION", entity_id=booking_id)
        .order_by(AuditLog.id)
        .all()
    )
    return [json.loads(r.metadata_json) for r in rows]


def confirmed(coordinator, scheduled, st, **kwargs):
    booking = scheduled(st, **kwargs)
    return coordinator.confirm_external_scheduling(booking.id, EVENT_REF)


# ---------- drafts ----------
def test_draft_reaches_scheduling_without_a_row(coordinator, make_session_type):
    st = make_session_type()
    draft = coordinator.begin_session_selection(BUILDER, st.id, client_email="ada@example.com")

    assert draft.state == BookingState.SCHEDULING_IN_PROGRESS
    assert draft.history == ["IDLE", "SESSION_TYPE_SELECTION"]
    assert f"utm_content={draft.correlation_token}" in draft.scheduling_url
    assert Booking.query.count() == 0

    loaded = coordinator.load_draft(draft.draft_token)
    assert loaded.correlation_token == draft.correlation_token
    assert loaded.amount == 5000


def test_tampered_draft_token_is_rejected(coordinator, make_session_type):
    st = make_session_type()
    draft = coordinator.begin_session_selection(BUILDER, st.id)

    with pytest.raises(ValidationError) as exc:
        coordinator.load_draft(draft.draft_token + "x")
    assert exc.value.code == "INVALID_DRAFT"


def test_inactive_or_foreign_session_type(coordinator, make_session_type):
    inactive = make_session_type(is_active=False)
    with pytest.raises(SessionTypeInactive):
        coordinator.begin_session_selection(BUILDER, inactive.id)

    st = make_session_type()
    with pytest.raises(NotFoundError):
        coordinator.begin_session_selection("someone-else", st.id)


def test_same_draft_submitted_twice_returns_one_booking(coordinator, make_session_type):
    st = make_session_type()
    draft = coordinator.begin_session_selection(BUILDER, st.id)
    start, end = slot()

    first = coordinator.record_external_scheduling(draft, start, end, EVENT_REF, client_id=CLIENT)
    second = coordinator.record_external_scheduling(draft, start, end, EVENT_REF, client_id=CLIENT)

    assert first.id == second.id
    assert Booking.query.count() == 1


# ---------- time slots ----------
def test_unavailable_slot_creates_nothing(coordinator, make_session_type, scheduling):
    st = make_session_type()
    scheduling.available = False
    draft = coordinator.begin_session_selection(BUILDER, st.id)

    with pytest.raises(InvalidTimeSlot):
        coordinator.record_external_scheduling(draft, *slot(), EVENT_REF)
    assert Booking.query.count() == 0


def test_slot_must_match_duration_and_be_in_future(coordinator, make_session_type):
    st = make_session_type(duration=60)
    draft = coordinator.begin_session_selection(BUILDER, st.id)
    start, _ = slot()

    with pytest.raises(InvalidTimeSlot):
        coordinator.record_external_scheduling(draft, start, start + timedelta(minutes=30))
    past = utcnow() - timedelta(hours=2)
    with pytest.raises(InvalidTimeSlot):
        coordinator.record_external_scheduling(draft, past, past + timedelta(minutes=60))


def test_overlapping_booking_for_same_builder_is_rejected(coordinator, make_session_type, scheduled):
    st = make_session_type()
    scheduled(st)
    draft = coordinator.begin_session_selection(BUILDER, st.id)

    with pytest.raises(InvalidTimeSlot):
        coordinator.record_external_scheduling(draft, *slot(), OTHER_EVENT)


# ---------- free sessions ----------
def test_free_session_confirms_without_payment(coordinator, make_session_type, scheduled, payments):
    st = make_session_type(price=0)
    booking = scheduled(st)
    assert booking.current_state == "SCHEDULED_PENDING_CONFIRMATION"
    assert booking.payment_status == "EXEMPT"

    booking = coordinator.confirm_external_scheduling(booking.id, EVENT_REF)

    assert booking.current_state == "BOOKING_CONFIRMED"
    assert booking.payment_status == "EXEMPT"
    assert booking.external_event_ref == EVENT_REF
    assert payments.checkouts == []
    assert transitions(booking.id)[-1]["via"] == ["SCHEDULE_CONFIRMED"]


def test_provider_event_ref_wins_over_proposed(coordinator, make_session_type, scheduled):
    st = make_session_type(price=0)
    booking = scheduled(st, event_ref=OTHER_EVENT)

    booking = coordinator.confirm_external_scheduling(booking.id, EVENT_REF)
    assert booking.external_event_ref == EVENT_REF


# ---------- payment ----------
def test_paid_booking_happy_path(coordinator, make_session_type, scheduled, payments):
    st = make_session_type(price=5000)
    booking = confirmed(coordinator, scheduled, st)
    assert booking.current_state == "SCHEDULE_CONFIRMED"
    assert booking.payment_status == "UNPAID"

    started = coordinator.initiate_payment(booking.id)
    booking = started.booking
    assert booking.current_state == "PAYMENT_PROCESSING"
    assert booking.payment_status == "PENDING"
    assert booking.external_payment_ref == started.payment_reference
    assert started.checkout_url.startswith("https://checkout.stripe.test/")

    checkout = payments.checkouts[0]
    assert checkout["amount"] == 5000
    assert checkout["metadata"]["booking_id"] == booking.id
    assert checkout["metadata"]["purpose"] == "booking"
    assert checkout["idempotency_key"] == f"checkout-{booking.id}-1"
    assert f"booking_id={booking.id}" in checkout["success_url"]

    booking = coordinator.record_payment_outcome(booking.id, started.payment_reference, "SUCCEEDED", 5000, "pi_1")

    assert booking.current_state == "BOOKING_CONFIRMED"
    assert booking.payment_status == "PAID"
    assert booking.payment_intent_ref == "pi_1"
    assert Payment.query.filter_by(booking_id=booking.id).one().status == "PAID"
    assert [t["to"] for t in transitions(booking.id)] == [
        "SCHEDULE_CONFIRMED", "PAYMENT_PENDING", "PAYMENT_PROCESSING", "BOOKING_CONFIRMED",
    ]
    assert transitions(booking.id)[-1]["via"] == ["PAYMENT_SUCCEEDED"]


def test_duplicate_success_changes_nothing(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = confirmed(coordinator, scheduled, st)
    started = coordinator.initiate_payment(booking.id)
    coordinator.record_payment_outcome(booking.id, started.payment_reference, "SUCCEEDED", 5000)
    before = len(transitions(booking.id))

    booking = coordinator.record_payment_outcome(booking.id, started.payment_reference, "SUCCEEDED", 5000)

    assert booking.current_state == "BOOKING_CONFIRMED"
    assert len(transitions(booking.id)) == before


def test_fail_fail_succeed(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = confirmed(coordinator, scheduled, st)
    refs = []
    for _ in range(2):
        started = coordinator.initiate_payment(booking.id)
        refs.append(started.payment_reference)
        booking = coordinator.record_payment_outcome(
            booking.id, started.payment_reference, "FAILED", reason="card_declined"
        )
        assert booking.current_state == "PAYMENT_FAILED"
        assert booking.payment_status == "FAILED"

    started = coordinator.initiate_payment(booking.id)
    refs.append(started.payment_reference)
    booking = coordinator.record_payment_outcome(booking.id, started.payment_reference, "SUCCEEDED", 5000)

    assert booking.current_state == "BOOKING_CONFIRMED"
    assert booking.payment_attempts == 3
    assert len(set(refs)) == 3
    statuses = [p.status for p in Payment.query.filter_by(booking_id=booking.id).order_by(Payment.attempt)]
    assert statuses == ["FAILED", "FAILED", "PAID"]


def test_exhausted_attempts_need_manual_intervention(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = confirmed(coordinator, scheduled, st)
    for _ in range(3):
        started = coordinator.initiate_payment(booking.id)
        booking = coordinator.record_payment_outcome(booking.id, started.payment_reference, "FAILED")

    assert booking.current_state == "ERROR_RECOVERY"
    assert booking.payment_status == "FAILED"
    assert booking.state_data["manual_intervention"] is True

    with pytest.raises(StaleStateError):
        coordinator.initiate_payment(booking.id)
    with pytest.raises(ManualInterventionRequired):
        coordinator.recover_booking(booking.id)


def test_concurrent_initiation_creates_one_checkout(coordinator, make_session_type, scheduled, payments):
    st = make_session_type()
    booking = confirmed(coordinator, scheduled, st)

    def second_request():
        with pytest.raises(StaleStateError):
            coordinator.initiate_payment(booking.id)

    payments.on_checkout = second_request
    started = coordinator.initiate_payment(booking.id)

    assert len(payments.checkouts) == 1
    assert started.booking.payment_attempts == 1

    again = coordinator.initiate_payment(booking.id)
    assert again.payment_reference == started.payment_reference
    assert again.checkout_url == started.checkout_url
    assert len(payments.checkouts) == 1


def test_conditional_update_rejects_outdated_state(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = scheduled(st)

    with pytest.raises(StaleStateError):
        coordinator.repo.compare_and_set(booking.id, "SCHEDULE_CONFIRMED", {"current_state": "PAYMENT_PENDING"})
    assert coordinator.get_booking(booking.id).current_state == "SCHEDULED_PENDING_CONFIRMATION"


def test_conditional_update_rejects_outdated_version(coordinator, make_session_type, scheduled):
    booking = scheduled(make_session_type())
    read_version = booking.version
    coordinator.repo.compare_and_set(booking.id, "SCHEDULED_PENDING_CONFIRMATION", {"notes": "first"}, read_version)

    with pytest.raises(ConcurrentUpdateError):
        coordinator.repo.compare_and_set(
            booking.id, "SCHEDULED_PENDING_CONFIRMATION", {"notes": "second"}, read_version
        )
    booking = coordinator.get_booking(booking.id)
    assert booking.notes == "first"
    assert booking.version == read_version + 1


def test_outcome_for_superseded_checkout_is_stale(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = confirmed(coordinator, scheduled, st)
    first = coordinator.initiate_payment(booking.id)
    coordinator.record_payment_outcome(booking.id, first.payment_reference, "FAILED")
    coordinator.initiate_payment(booking.id)

    with pytest.raises(StaleStateError):
        coordinator.record_payment_outcome(booking.id, first.payment_reference, "SUCCEEDED", 5000)
    assert coordinator.get_booking(booking.id).current_state == "PAYMENT_PROCESSING"


def test_payment_before_scheduling_confirmation_is_buffered(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = scheduled(st)

    booking = coordinator.record_payment_outcome(
        booking.id, "cs_early", "SUCCEEDED", 5000, "pi_early", event_id="evt_early"
    )
    assert booking.current_state == "SCHEDULED_PENDING_CONFIRMATION"
    assert booking.payment_status == "UNPAID"
    assert BufferedWebhook.query.count() == 1

    booking = coordinator.confirm_external_scheduling(booking.id, EVENT_REF)

    assert booking.current_state == "BOOKING_CONFIRMED"
    assert booking.payment_status == "PAID"
    assert booking.external_payment_ref == "cs_early"
    assert BufferedWebhook.query.count() == 0
    assert Payment.query.filter_by(stripe_session_id="cs_early").one().status == "PAID"


def test_short_payment_parks_in_webhook_error_and_recovers(coordinator, make_session_type, scheduled,
                                                           payments):
    st = make_session_type()
    booking = confirmed(coordinator, scheduled, st)
    started = coordinator.initiate_payment(booking.id)
    ref = started.payment_reference

    booking = coordinator.record_payment_outcome(booking.id, ref, "SUCCEEDED", 4000)
    assert booking.current_state == "ERROR_WEBHOOK"
    assert booking.payment_status == "PENDING"
    assert booking.state_data["error_code"] == "AMOUNT_MISMATCH"

    # processor still shows the checkout open: recovery check fails
    booking = coordinator.recover_booking(booking.id)
    assert booking.current_state == "ERROR_WEBHOOK"
    assert booking.state_data["recovery_attempts"] == 1

    payments.statuses[ref] = CheckoutStatus(
        session_id=ref, status="complete", payment_status="paid", amount_total=5000, payment_intent="pi_2"
    )
    booking = coordinator.recover_booking(booking.id)
    assert booking.current_state == "BOOKING_CONFIRMED"
    assert booking.payment_status == "PAID"
    assert booking.payment_intent_ref == "pi_2"


def test_recovery_gives_up_after_limit(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = confirmed(coordinator, scheduled, st)
    started = coordinator.initiate_payment(booking.id)
    coordinator.record_payment_outcome(booking.id, started.payment_reference, "SUCCEEDED", 100)

    coordinator.recover_booking(booking.id)
    coordinator.recover_booking(booking.id)
    with pytest.raises(ManualInterventionRequired):
        coordinator.recover_booking(booking.id)

    booking = coordinator.get_booking(booking.id)
    assert booking.current_state == "ERROR_RECOVERY"
    assert booking.state_data["manual_intervention"] is True


def test_checkout_failure_parks_in_payment_error(coordinator, make_session_type, scheduled, payments):
    st = make_session_type()
    booking = confirmed(coordinator, scheduled, st)
    payments.checkout_error = TransientProviderError("Stripe unavailable", provider="stripe")

    with pytest.raises(TransientProviderError) as exc:
        coordinator.initiate_payment(booking.id)
    assert exc.value.booking_id == booking.id

    booking = coordinator.get_booking(booking.id)
    assert booking.current_state == "ERROR_PAYMENT"
    assert booking.payment_status == "UNPAID"
    assert booking.payment_attempts == 0
    assert booking.state_data["resume_state"] == "SCHEDULE_CONFIRMED"

    payments.checkout_error = None
    booking = coordinator.recover_booking(booking.id)
    assert booking.current_state == "SCHEDULE_CONFIRMED"
    assert booking.payment_status == "UNPAID"

    started = coordinator.initiate_payment(booking.id)
    assert started.booking.current_state == "PAYMENT_PROCESSING"


def test_scheduling_failure_recovers_and_applies_buffered_invitee(coordinator, make_session_type, scheduling):
    st = make_session_type()
    scheduling.error = TransientProviderError("Calendly returned 503", provider="calendly")
    draft = coordinator.begin_session_selection(BUILDER, st.id)

    with pytest.raises(TransientProviderError) as exc:
        coordinator.record_external_scheduling(draft, *slot(), EVENT_REF, client_id=CLIENT)
    booking = coordinator.get_booking(exc.value.booking_id)
    assert booking.current_state == "ERROR_SCHEDULING"

    # invitee.created arrives while the booking is parked
    coordinator.scheduling_confirmed(booking.correlation_token, EVENT_REF, event_id="invitee.created:EV1")
    assert BufferedWebhook.query.count() == 1

    scheduling.error = None
    booking = coordinator.recover_booking(booking.id)

    assert booking.current_state == "SCHEDULE_CONFIRMED"
    assert booking.external_event_ref == EVENT_REF
    assert BufferedWebhook.query.count() == 0


# ---------- cancellation and refunds ----------
def test_cancel_with_full_refund(coordinator, make_session_type, paid_booking, payments):
    st = make_session_type()
    booking = paid_booking(st)

    booking = coordinator.cancel_booking(booking.id, "Plans changed", "client", actor=CLIENT)
    assert booking.current_state == "REFUND_PENDING"
    assert booking.payment_status == "PAID"
    assert booking.cancelled_by == "client"
    refund = payments.refunds[0]
    assert refund["amount"] == 5000
    assert refund["payment_reference"] == "pi_test_1"

    booking = coordinator.record_refund_outcome(booking.id, refund["refund_id"], True, 5000)
    assert booking.current_state == "REFUND_COMPLETED"
    assert booking.payment_status == "REFUNDED"
    assert booking.refunded_amount == 5000

    again = coordinator.record_refund_outcome(booking.id, refund["refund_id"], True, 5000)
    assert again.current_state == "REFUND_COMPLETED"


def test_late_client_cancel_refunds_half(coordinator, make_session_type, paid_booking, payments):
    st = make_session_type()
    booking = paid_booking(st, window=slot_in(5))

    booking = coordinator.cancel_booking(booking.id, "Too busy", "client")
    assert payments.refunds[0]["amount"] == 2500

    booking = coordinator.record_refund_outcome(booking.id, payments.refunds[0]["refund_id"], True, 2500)
    assert booking.current_state == "REFUND_COMPLETED"
    assert booking.payment_status == "PARTIALLY_REFUNDED"


def test_late_builder_cancel_refunds_everything(coordinator, make_session_type, paid_booking, payments):
    st = make_session_type()
    booking = paid_booking(st, window=slot_in(5))

    coordinator.cancel_booking(booking.id, "Builder sick", "builder")
    assert payments.refunds[0]["amount"] == 5000


def test_refund_failure_leaves_booking_cancelled_for_retry(coordinator, make_session_type, paid_booking,
                                                           payments):
    st = make_session_type()
    booking = paid_booking(st)
    payments.refund_error = TransientProviderError("Stripe unavailable", provider="stripe")

    booking = coordinator.cancel_booking(booking.id, "Plans changed")
    assert booking.current_state == "BOOKING_CANCELLED"
    assert booking.state_data["refund_error"] == "Stripe unavailable"

    with pytest.raises(InvalidRefundAmount):
        coordinator.initiate_refund(booking.id, 999999)

    payments.refund_error = None
    booking = coordinator.initiate_refund(booking.id)
    assert booking.current_state == "REFUND_PENDING"
    assert payments.refunds[0]["amount"] == 5000


def test_failed_refund_webhook_returns_to_cancelled(coordinator, make_session_type, paid_booking, payments):
    st = make_session_type()
    booking = paid_booking(st)
    coordinator.cancel_booking(booking.id, "Plans changed")

    booking = coordinator.record_refund_outcome(booking.id, payments.refunds[0]["refund_id"], False)

    assert booking.current_state == "BOOKING_CANCELLED"
    assert Payment.query.filter_by(booking_id=booking.id).one().refunded_amount == 0


def test_refund_outcome_survives_concurrent_write(coordinator, make_session_type, paid_booking, payments,
                                                  monkeypatch):
    booking = paid_booking(make_session_type())
    coordinator.cancel_booking(booking.id, "Plans changed")
    refund_id = payments.refunds[0]["refund_id"]
    original = coordinator.repo.compare_and_set
    raced = []

    def compare_and_set_after_admin_note(booking_id, expected_state, values, expected_version=None):
        if not raced:
            raced.append(booking_id)
            db.session.query(Booking).filter_by(id=booking_id).update(
                {"notes": "admin note", "version": Booking.version + 1}, synchronize_session=False
            )
            db.session.commit()
        return original(booking_id, expected_state, values, expected_version)

    monkeypatch.setattr(coordinator.repo, "compare_and_set", compare_and_set_after_admin_note)
    booking = coordinator.record_refund_outcome(booking.id, refund_id, True, 5000)

    assert raced == [booking.id]
    assert booking.current_state == "REFUND_COMPLETED"
    assert booking.payment_status == "REFUNDED"
    assert booking.notes == "admin note"


def test_free_booking_cancel_has_no_refund(coordinator, make_session_type, scheduled, payments):
    st = make_session_type(price=0)
    booking = confirmed(coordinator, scheduled, st)

    booking = coordinator.cancel_booking(booking.id, "No longer needed")
    assert booking.current_state == "BOOKING_CANCELLED"
    assert payments.refunds == []


# ---------- reschedule ----------
def test_reschedule_same_price(coordinator, make_session_type, paid_booking):
    st = make_session_type()
    booking = paid_booking(st)
    new_start, new_end = slot(days=4)

    result = coordinator.reschedule_booking(booking.id, new_start, new_end, OTHER_EVENT)

    assert result.adjustment is None
    booking = result.booking
    assert booking.current_state == "BOOKING_CONFIRMED"
    assert booking.start_time == new_start
    assert booking.external_event_ref == OTHER_EVENT
    assert booking.state_data["reschedule_count"] == 1
    assert transitions(booking.id)[-1]["via"] == ["BOOKING_RESCHEDULED"]


def test_reschedule_to_pricier_session_charges_difference(coordinator, make_session_type, paid_booking,
                                                          payments):
    st = make_session_type(price=5000)
    premium = make_session_type(price=8000, title="Deep dive")
    booking = paid_booking(st)
    old_start = booking.start_time
    new_start, new_end = slot(days=5)

    result = coordinator.reschedule_booking(booking.id, new_start, new_end, OTHER_EVENT,
                                            new_session_type_id=premium.id)

    assert result.adjustment == "charge"
    assert result.checkout_url
    charge = payments.checkouts[-1]
    assert charge["amount"] == 3000
    assert charge["metadata"]["purpose"] == "adjustment"
    assert result.booking.start_time == old_start
    with pytest.raises(StaleStateError):
        coordinator.cancel_booking(booking.id, "changed my mind")

    booking = coordinator.record_payment_outcome(booking.id, charge["session_id"], "SUCCEEDED", 3000, "pi_adj")

    assert booking.current_state == "BOOKING_CONFIRMED"
    assert booking.amount == 8000
    assert booking.session_type_id == premium.id
    assert booking.start_time == new_start
    assert booking.state_data["pending_adjustment"] is None


def test_reschedule_to_cheaper_session_refunds_difference(coordinator, make_session_type, paid_booking,
                                                          payments):
    st = make_session_type(price=5000)
    cheap = make_session_type(price=2000, title="Quick call")
    booking = paid_booking(st)

    result = coordinator.reschedule_booking(booking.id, *slot(days=6), OTHER_EVENT, new_session_type_id=cheap.id)

    assert result.adjustment == "refund"
    refund = payments.refunds[-1]
    assert refund["amount"] == 3000

    booking = coordinator.record_refund_outcome(booking.id, refund["refund_id"], True, 3000)
    assert booking.current_state == "BOOKING_CONFIRMED"
    assert booking.payment_status == "PAID"
    assert booking.amount == 2000
    assert booking.refunded_amount == 3000


def test_second_reschedule_cannot_erase_first_adjustment(coordinator, make_session_type, paid_booking, payments,
                                                         scheduling):
    st = make_session_type(price=5000)
    cheap = make_session_type(price=2000, title="Quick call")
    booking_id = paid_booking(st).id
    new_start, new_end = slot(days=6)
    first = {}

    def reschedule_meanwhile():
        first["result"] = coordinator.reschedule_booking(
            booking_id, new_start, new_end, OTHER_EVENT, new_session_type_id=cheap.id
        )

    scheduling.on_verify = reschedule_meanwhile
    with pytest.raises(StaleStateError):
        coordinator.reschedule_booking(booking_id, new_start, new_end, OTHER_EVENT, new_session_type_id=cheap.id)

    assert first["result"].adjustment == "refund"
    assert len(payments.refunds) == 1
    refund_id = payments.refunds[0]["refund_id"]
    assert coordinator.get_booking(booking_id).state_data["pending_adjustment"]["refund_id"] == refund_id

    booking = coordinator.record_refund_outcome(booking_id, refund_id, True, 3000)
    assert booking.amount == 2000
    assert booking.start_time == new_start
    assert booking.external_event_ref == OTHER_EVENT
    assert booking.state_data["pending_adjustment"] is None


def test_failed_adjustment_request_releases_the_claim(coordinator, make_session_type, paid_booking, payments):
    st = make_session_type(price=5000)
    premium = make_session_type(price=8000, title="Deep dive")
    booking = paid_booking(st)
    payments.checkout_error = TransientProviderError("stripe down", provider="stripe")

    with pytest.raises(TransientProviderError):
        coordinator.reschedule_booking(booking.id, *slot(days=5), OTHER_EVENT, new_session_type_id=premium.id)

    booking = coordinator.get_booking(booking.id)
    assert booking.state_data["pending_adjustment"] is None
    assert booking.amount == 5000


# ---------- sweep and claim ----------
def test_sweep_releases_unconfirmed_and_drops_orphan_events(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = scheduled(st)
    coordinator.scheduling_confirmed("orphan-token", OTHER_EVENT, event_id="invitee.created:orphan")

    assert coordinator.expire_stale(now=utcnow()).released == 0

    result = coordinator.expire_stale(now=utcnow() + timedelta(hours=1))
    assert result.released == 1
    assert result.buffered_discarded == 1

    booking = coordinator.get_booking(booking.id)
    assert booking.current_state == "ERROR_RECOVERY"
    assert booking.state_data["released"] is True
    assert AuditLog.query.filter_by(action="WEBHOOK_DISCARDED").count() == 1


def test_sweep_releases_bookings_abandoned_before_payment(coordinator, make_session_type, scheduled):
    st = make_session_type()
    unpaid = confirmed(coordinator, scheduled, st)
    declined = confirmed(coordinator, scheduled, st, days=4)
    started = coordinator.initiate_payment(declined.id)
    coordinator.record_payment_outcome(declined.id, started.payment_reference, "FAILED", reason="card declined")
    paying = confirmed(coordinator, scheduled, st, days=5)
    coordinator.initiate_payment(paying.id)

    assert coordinator.expire_stale(now=utcnow()).released == 0
    result = coordinator.expire_stale(now=utcnow() + timedelta(days=1))

    assert result.released == 2
    for booking_id in (unpaid.id, declined.id):
        booking = coordinator.get_booking(booking_id)
        assert booking.current_state == "ERROR_RECOVERY"
        assert booking.state_data["released"] is True
    assert coordinator.get_booking(paying.id).current_state == "PAYMENT_PROCESSING"

    again = scheduled(st, event_ref=OTHER_EVENT)
    assert again.start_time == unpaid.start_time


def test_released_slot_can_be_booked_again(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = scheduled(st)
    coordinator.release_unconfirmed(booking.id, "Cancelled in scheduling provider")

    again = scheduled(st, event_ref=OTHER_EVENT)
    assert again.id != booking.id


def test_claim_anonymous_booking(coordinator, make_session_type, scheduled):
    st = make_session_type()
    booking = scheduled(st, client_id=None)

    with pytest.raises(NotFoundError):
        coordinator.claim_booking(booking.id, "client-9", "wrong-token")

    booking = coordinator.claim_booking(booking.id, "client-9", booking.correlation_token)
    assert booking.client_id == "client-9"

    with pytest.raises(ValidationError) as exc:
        coordinator.claim_booking(booking.id, "client-10", booking.correlation_token)
    assert exc.value.code == "ALREADY_CLAIMED"
