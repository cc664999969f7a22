"""
Booking lifecycle coordinator.

Owns every write to ``Booking.current_state`` / ``payment_status``. Each write
is a conditional update against the state the caller last read, so concurrent
requests and webhook deliveries on the same booking serialize on the row:
the loser gets StaleStateError and re-reads.

Providers are injected; nothing here reaches for a module-level client.
"""
import hmac
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from adapters.scheduling import TimeSlot
from models import Payment
from schemas.state_data import (
    BookingCancelledData,
    BookingConfirmedData,
    ErrorData,
    PaymentFailedData,
    PaymentPendingData,
    PaymentProcessingData,
    PendingConfirmationData,
    PriceAdjustment,
    RecoveryData,
    RefundCompletedData,
    RefundPart,
    RefundPendingData,
    ScheduleConfirmedData,
    dump_state_data,
    load_state_data,
)
from services.errors import (
    BookingError,
    ConcurrentUpdateError,
    InvalidRefundAmount,
    InvalidTimeSlot,
    ManualInterventionRequired,
    NotFoundError,
    ProviderError,
    SessionTypeInactive,
    StaleStateError,
    ValidationError,
)
from services.repository import BookingRepository, WebhookBuffer
from services.states import ERROR_STATES, BookingState as S, PaymentStatus as P, can_transition, is_valid_pair
from utils.audit import log_event
from utils.clock import to_naive_utc, utcnow
from utils.urls import append_query

logger = logging.getLogger(__name__)

DRAFT_SALT = "booking-draft"


class PaymentOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass
class CoordinatorSettings:
    draft_secret: str
    draft_ttl_seconds: int = 3600
    webhook_buffer_ttl_seconds: int = 900
    pending_booking_ttl_seconds: int = 1800
    webhook_event_retention_hours: int = 72
    max_payment_attempts: int = 3
    max_recovery_attempts: int = 3
    refund_full_notice_hours: int = 24
    late_cancel_refund_percent: int = 50
    success_url: str = "http://localhost:5000/pay/success"
    cancel_url: str = "http://localhost:5000/pay/cancel"

    @classmethod
    def from_config(cls, config):
        return cls(
            draft_secret=config["SECRET_KEY"],
            draft_ttl_seconds=config["DRAFT_TTL_SECONDS"],
            webhook_buffer_ttl_seconds=config["WEBHOOK_BUFFER_TTL_SECONDS"],
            pending_booking_ttl_seconds=config["PENDING_BOOKING_TTL_SECONDS"],
            webhook_event_retention_hours=config["WEBHOOK_EVENT_RETENTION_HOURS"],
            max_payment_attempts=config["MAX_PAYMENT_ATTEMPTS"],
            max_recovery_attempts=config["MAX_RECOVERY_ATTEMPTS"],
            refund_full_notice_hours=config["REFUND_FULL_NOTICE_HOURS"],
            late_cancel_refund_percent=config["LATE_CANCEL_REFUND_PERCENT"],
            success_url=config["STRIPE_SUCCESS_URL"],
            cancel_url=config["STRIPE_CANCEL_URL"],
        )


@dataclass
class BookingDraft:
    """A booking that exists only in the client's hands until scheduling is recorded."""

    builder_id: str
    session_type_id: int
    correlation_token: str
    amount: int
    currency: str
    duration_minutes: int
    state: S = S.IDLE
    scheduling_url: str | None = None
    draft_token: str | None = None
    history: list = field(default_factory=list)

    def advance(self, target: S) -> None:
        if not can_transition(self.state, target):
            raise StaleStateError(f"Draft cannot move from {self.state.value} to {target.value}")
        self.history.append(self.state.value)
        self.state = target

    def to_dict(self):
        return {
            "state": self.state.value,
            "builder_id": self.builder_id,
            "session_type_id": self.session_type_id,
            "amount": self.amount,
            "currency": self.currency,
            "duration_minutes": self.duration_minutes,
            "scheduling_url": self.scheduling_url,
            "draft_token": self.draft_token,
        }


@dataclass
class PaymentInitiation:
    booking: object
    checkout_url: str | None = None
    payment_reference: str | None = None
    confirmed: bool = False


@dataclass
class RescheduleResult:
    booking: object
    adjustment: str | None = None  # None, "charge" or "refund"
    checkout_url: str | None = None


@dataclass
class SweepResult:
    released: int = 0
    buffered_discarded: int = 0
    events_purged: int = 0


# buffered event kinds
SCHEDULING_CONFIRMED = "scheduling_confirmed"
PAYMENT_OUTCOME = "payment_outcome"
REFUND_OUTCOME = "refund_outcome"

RELEASABLE = (S.SCHEDULED_PENDING_CONFIRMATION, S.SCHEDULE_CONFIRMED, S.PAYMENT_FAILED, S.ERROR_SCHEDULING)
REFUND_WRITE_ATTEMPTS = 3


class BookingCoordinator:
    def __init__(self, session, scheduling, payments, settings: CoordinatorSettings, clock=utcnow):
        self.scheduling = scheduling
        self.payments = payments
        self.settings = settings
        self.repo = BookingRepository(session)
        self.buffer = WebhookBuffer(session, settings.webhook_buffer_ttl_seconds)
        self._session = session
        self._clock = clock
        self._drafts = URLSafeTimedSerializer(settings.draft_secret, salt=DRAFT_SALT)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def get_booking(self, booking_id: str):
        booking = self.repo.get(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", booking_id=booking_id)
        return booking

    def _transition(self, booking, target: S, *, payment_status=None, data=None, via=(), values=None, actor=None,
                    version=None):
        """
        Move ``booking`` from the state it was read in to ``target``.

        ``via`` lists intermediate states that are passed through in the same
        update (e.g. PAYMENT_SUCCEEDED on the way to BOOKING_CONFIRMED); every
        hop must be allowed by the transition table.
        """
        current = S(booking.current_state)
        path = [current, *via, target]
        for src, dst in zip(path, path[1:]):
            if not can_transition(src, dst):
                raise StaleStateError(
                    f"Booking cannot move from {src.value} to {dst.value}", booking_id=booking.id
                )

        status = P(payment_status or booking.payment_status)
        if not is_valid_pair(target, status):
            raise ValueError(f"{status.value} is not a valid payment status for {target.value}")
        if data is not None and data.state != target.value:
            raise ValueError(f"{data.state} payload written with state {target.value}")

        now = self._clock()
        update = dict(values or {})
        update.update(
            current_state=target.value,
            payment_status=status.value,
            state_data=dump_state_data(data),
            last_transition=now,
        )
        updated = self.repo.compare_and_set(
            booking.id, current.value, update, booking.version if version is None else version
        )

        logger.info(
            "Booking %s -> %s", current.value, target.value,
            extra={"booking_id": updated.id, "state": target.value},
        )
        log_event(
            "BOOKING_TRANSITION",
            user_id=actor,
            entity="booking",
            entity_id=updated.id,
            metadata={
                "from": current.value,
                "to": target.value,
                "via": [s.value for s in via],
                "payment_status": status.value,
            },
        )
        return updated

    def _update(self, booking, data=None, values=None, *, keep_data=False, version=None):
        """Same-state write, guarded by the state and version the booking was read in."""
        update = dict(values or {})
        if not keep_data:
            update["state_data"] = dump_state_data(data)
        return self.repo.compare_and_set(
            booking.id, booking.current_state, update, booking.version if version is None else version
        )

    def _audit_created(self, booking, actor=None):
        logger.info(
            "Booking created in %s", booking.current_state,
            extra={"booking_id": booking.id, "state": booking.current_state},
        )
        log_event(
            "BOOKING_CREATED",
            user_id=actor,
            entity="booking",
            entity_id=booking.id,
            metadata={
                "from": S.SCHEDULING_IN_PROGRESS.value,
                "to": booking.current_state,
                "payment_status": booking.payment_status,
                "amount": booking.amount,
            },
        )

    def _load_session_type(self, builder_id, session_type_id):
        st = self.repo.get_session_type(session_type_id)
        if st is None or st.builder_id != builder_id:
            raise NotFoundError("Session type not found")
        if not st.is_active:
            raise SessionTypeInactive("This session type is no longer available")
        return st

    def _check_window(self, st, start, end, exclude_id=None):
        start = to_naive_utc(start)
        end = to_naive_utc(end)
        if end <= start:
            raise InvalidTimeSlot("End time must be after start time")
        if end - start != timedelta(minutes=st.duration_minutes):
            raise InvalidTimeSlot(f"Time slot must be exactly {st.duration_minutes} minutes")
        if start <= self._clock():
            raise InvalidTimeSlot("Time slot is in the past")
        if self.repo.has_overlap(st.builder_id, start, end, exclude_id=exclude_id):
            raise InvalidTimeSlot("The builder is already booked for this time")
        return start, end

    def _slot_available(self, st, start, end) -> bool:
        if not st.external_event_type_ref:
            return True
        slot = TimeSlot(event_type_ref=st.external_event_type_ref, start=start, end=end)
        return self.scheduling.verify_slot_still_available(slot)

    def _refundable(self, booking) -> int:
        return sum(p.amount - p.refunded_amount for p in self.repo.paid_payments(booking.id))

    # ------------------------------------------------------------------
    # draft: IDLE -> SESSION_TYPE_SELECTION -> SCHEDULING_IN_PROGRESS
    # ------------------------------------------------------------------
    def begin_session_selection(self, builder_id: str, session_type_id, *, client_name=None,
                                client_email=None) -> BookingDraft:
        st = self._load_session_type(builder_id, session_type_id)
        if not st.scheduling_url:
            raise ValidationError("Session type has no scheduling link", code="SCHEDULING_NOT_CONFIGURED")

        draft = BookingDraft(
            builder_id=builder_id,
            session_type_id=st.id,
            correlation_token=uuid.uuid4().hex,
            amount=st.price,
            currency=st.currency,
            duration_minutes=st.duration_minutes,
        )
        draft.advance(S.SESSION_TYPE_SELECTION)
        draft.advance(S.SCHEDULING_IN_PROGRESS)
        draft.scheduling_url = self.scheduling.build_scheduling_url(
            st.scheduling_url, draft.correlation_token, name=client_name, email=client_email
        )
        draft.draft_token = self._drafts.dumps({
            "builder_id": builder_id,
            "session_type_id": st.id,
            "correlation_token": draft.correlation_token,
        })
        return draft

    def load_draft(self, draft_token: str) -> BookingDraft:
        try:
            raw = self._drafts.loads(draft_token, max_age=self.settings.draft_ttl_seconds)
        except SignatureExpired:
            raise ValidationError("Booking draft expired, please start again", code="DRAFT_EXPIRED")
        except BadSignature:
            raise ValidationError("Invalid booking draft", code="INVALID_DRAFT")

        st = self._load_session_type(raw["builder_id"], raw["session_type_id"])
        return BookingDraft(
            builder_id=raw["builder_id"],
            session_type_id=st.id,
            correlation_token=raw["correlation_token"],
            amount=st.price,
            currency=st.currency,
            duration_minutes=st.duration_minutes,
            state=S.SCHEDULING_IN_PROGRESS,
            draft_token=draft_token,
            history=[S.IDLE.value, S.SESSION_TYPE_SELECTION.value],
        )

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------
    def record_external_scheduling(self, draft: BookingDraft, proposed_start, proposed_end,
                                   external_event_ref=None, *, client_id=None, client_email=None,
                                   client_timezone=None):
        if draft.state != S.SCHEDULING_IN_PROGRESS:
            raise StaleStateError("Draft is not waiting for a time slot")

        existing = self.repo.get_by_correlation_token(draft.correlation_token)
        if existing is not None:
            # same draft submitted twice
            return existing

        st = self._load_session_type(draft.builder_id, draft.session_type_id)
        start, end = self._check_window(st, proposed_start, proposed_end)
        payment_status = P.EXEMPT if st.is_free else P.UNPAID

        fields = dict(
            builder_id=st.builder_id,
            client_id=client_id,
            client_email=client_email,
            client_timezone=client_timezone,
            session_type_id=st.id,
            start_time=start,
            end_time=end,
            amount=st.price,
            currency=st.currency,
            payment_status=payment_status.value,
            correlation_token=draft.correlation_token,
            last_transition=self._clock(),
            created_at=self._clock(),
            updated_at=self._clock(),
        )

        try:
            available = self._slot_available(st, start, end)
        except ProviderError as exc:
            data = ErrorData(
                state=S.ERROR_SCHEDULING.value,
                error_code=exc.code,
                message=exc.message,
                recoverable=exc.recoverable,
                resume_state=S.SCHEDULED_PENDING_CONFIRMATION.value,
                resume_payment_status=payment_status.value,
                proposed_event_ref=external_event_ref,
                occurred_at=self._clock(),
            )
            booking = self.repo.create(
                current_state=S.ERROR_SCHEDULING.value, state_data=dump_state_data(data), **fields
            )
            self._audit_created(booking, actor=client_id)
            logger.error(
                "Availability check failed: %s", exc.message,
                extra={"booking_id": booking.id, "provider": exc.provider},
            )
            exc.booking_id = booking.id
            raise

        if not available:
            raise InvalidTimeSlot("That time is no longer available, please pick another")

        data = PendingConfirmationData(proposed_event_ref=external_event_ref)
        booking = self.repo.create(
            current_state=S.SCHEDULED_PENDING_CONFIRMATION.value, state_data=dump_state_data(data), **fields
        )
        self._audit_created(booking, actor=client_id)
        return self._drain_buffer(booking)

    def confirm_external_scheduling(self, booking_id: str, external_event_ref: str, *, invitee_ref=None):
        booking = self.get_booking(booking_id)
        if booking.current_state != S.SCHEDULED_PENDING_CONFIRMATION:
            if booking.external_event_ref == external_event_ref:
                return booking
            raise StaleStateError("Scheduling is not awaiting confirmation", booking_id=booking.id)

        data = load_state_data(booking.state_data)
        proposed = data.proposed_event_ref if data else None
        if proposed and proposed != external_event_ref:
            logger.warning(
                "Scheduling provider confirmed a different event than proposed; using the provider's",
                extra={"booking_id": booking.id, "reason": f"{proposed} != {external_event_ref}"},
            )

        now = self._clock()
        values = {"external_event_ref": external_event_ref}
        if booking.payment_status == P.EXEMPT:
            booking = self._transition(
                booking, S.BOOKING_CONFIRMED,
                via=(S.SCHEDULE_CONFIRMED,),
                data=BookingConfirmedData(confirmed_at=now),
                values=values,
            )
        else:
            booking = self._transition(
                booking, S.SCHEDULE_CONFIRMED,
                data=ScheduleConfirmedData(confirmed_at=now, invitee_ref=invitee_ref),
                values=values,
            )
        return self._drain_buffer(booking)

    def scheduling_confirmed(self, correlation_token: str, external_event_ref: str, *, invitee_ref=None,
                             event_id=None):
        """Webhook entry: the booking may not exist yet, or may be parked in an error state."""
        booking = self.repo.get_by_correlation_token(correlation_token)
        if booking is None or self._parked(booking):
            self._buffer(
                correlation_token, "calendly", event_id or f"invitee.created:{external_event_ref}",
                "invitee.created",
                {"kind": SCHEDULING_CONFIRMED, "external_event_ref": external_event_ref, "invitee_ref": invitee_ref},
            )
            return booking
        return self.confirm_external_scheduling(booking.id, external_event_ref, invitee_ref=invitee_ref)

    def _parked(self, booking) -> bool:
        if booking.current_state == S.ERROR_SCHEDULING:
            return True
        if booking.current_state == S.ERROR_RECOVERY:
            data = load_state_data(booking.state_data)
            return bool(data and not data.released and not data.manual_intervention)
        return False

    def release_unconfirmed(self, booking_id: str, reason: str, *, initiator="system", actor=None):
        booking = self.get_booking(booking_id)
        if booking.current_state not in RELEASABLE:
            raise StaleStateError("Only unconfirmed bookings can be released", booking_id=booking.id)
        return self._transition(
            booking, S.ERROR_RECOVERY,
            data=RecoveryData(error_state=None, released=True, reason=reason),
            values={"cancel_reason": reason, "cancelled_by": initiator, "cancelled_at": self._clock()},
            actor=actor,
        )

    def claim_booking(self, booking_id: str, client_id: str, correlation_token: str):
        booking = self.get_booking(booking_id)
        if not hmac.compare_digest(booking.correlation_token, correlation_token or ""):
            raise NotFoundError("Booking not found", booking_id=booking_id)
        if booking.client_id == client_id:
            return booking
        if booking.client_id:
            raise ValidationError("Booking already belongs to another client", code="ALREADY_CLAIMED",
                                  booking_id=booking.id)
        booking = self._update(booking, values={"client_id": client_id}, keep_data=True)
        log_event("BOOKING_CLAIMED", user_id=client_id, entity="booking", entity_id=booking.id)
        return booking

    # ------------------------------------------------------------------
    # payment
    # ------------------------------------------------------------------
    def initiate_payment(self, booking_id: str, *, actor=None) -> PaymentInitiation:
        booking = self.get_booking(booking_id)
        state = booking.current_state

        if state == S.SCHEDULE_CONFIRMED and booking.payment_status == P.EXEMPT:
            booking = self._transition(
                booking, S.BOOKING_CONFIRMED, data=BookingConfirmedData(confirmed_at=self._clock()), actor=actor
            )
            return PaymentInitiation(booking=booking, confirmed=True)

        if state == S.PAYMENT_PROCESSING:
            data = load_state_data(booking.state_data)
            return PaymentInitiation(
                booking=booking,
                checkout_url=data.checkout_url if data else None,
                payment_reference=booking.external_payment_ref,
            )

        if state not in (S.SCHEDULE_CONFIRMED, S.PAYMENT_FAILED):
            raise StaleStateError(f"Payment cannot start from {state}", booking_id=booking.id)
        if booking.payment_attempts >= self.settings.max_payment_attempts:
            raise ManualInterventionRequired("Payment attempts exhausted", booking_id=booking.id)

        prior_state = S(state)
        prior_status = P(booking.payment_status)
        attempt = booking.payment_attempts + 1
        booking = self._transition(
            booking, S.PAYMENT_PENDING,
            payment_status=P.PENDING,
            data=PaymentPendingData(attempt=attempt),
            values={"payment_attempts": attempt},
            actor=actor,
        )

        success_url = append_query(self.settings.success_url, {"booking_id": booking.id})
        cancel_url = append_query(self.settings.cancel_url, {"booking_id": booking.id})
        try:
            checkout = self.payments.create_checkout_session(
                booking.id,
                booking.amount,
                booking.currency,
                success_url,
                cancel_url,
                description=booking.session_type.title if booking.session_type else "",
                metadata={
                    "booking_id": booking.id,
                    "builder_id": booking.builder_id,
                    "client_id": booking.client_id,
                    "session_type_id": booking.session_type_id,
                    "purpose": "booking",
                    "attempt": attempt,
                },
                idempotency_key=f"checkout-{booking.id}-{attempt}",
            )
        except ProviderError as exc:
            self._transition(
                booking, S.ERROR_PAYMENT,
                payment_status=prior_status,
                data=ErrorData(
                    state=S.ERROR_PAYMENT.value,
                    error_code=exc.code,
                    message=exc.message,
                    recoverable=exc.recoverable,
                    resume_state=prior_state.value,
                    resume_payment_status=prior_status.value,
                    occurred_at=self._clock(),
                ),
                values={"payment_attempts": attempt - 1},
            )
            exc.booking_id = booking.id
            raise

        self.repo.add(Payment(
            booking_id=booking.id,
            attempt=attempt,
            purpose="booking",
            amount=booking.amount,
            currency=booking.currency,
            status="INIT",
            stripe_session_id=checkout.session_id,
        ))
        booking = self._transition(
            booking, S.PAYMENT_PROCESSING,
            data=PaymentProcessingData(attempt=attempt, checkout_url=checkout.url),
            values={"external_payment_ref": checkout.session_id},
        )
        booking = self._drain_buffer(booking)
        return PaymentInitiation(
            booking=booking,
            checkout_url=checkout.url,
            payment_reference=checkout.session_id,
            confirmed=booking.current_state == S.BOOKING_CONFIRMED,
        )

    def record_payment_outcome(self, booking_id: str, payment_reference: str, outcome, amount=None,
                               payment_intent=None, *, reason=None, event_id=None):
        outcome = PaymentOutcome(outcome)
        booking = self.get_booking(booking_id)
        payment = self.repo.payment_by_reference(payment_reference)

        if payment is not None and payment.purpose == "adjustment":
            return self._settle_charge(booking, payment, outcome, amount, payment_intent)
        if payment is not None and payment.status == "PAID":
            return booking
        if payment is not None and payment.status == "FAILED" and outcome == PaymentOutcome.FAILED:
            return booking

        state = booking.current_state
        if state == S.SCHEDULED_PENDING_CONFIRMATION or (
            state == S.PAYMENT_PENDING and booking.external_payment_ref != payment_reference
        ):
            self._buffer(
                booking.correlation_token, "stripe",
                event_id or f"payment:{payment_reference}:{outcome.value}",
                "payment_outcome",
                {
                    "kind": PAYMENT_OUTCOME,
                    "booking_id": booking.id,
                    "payment_reference": payment_reference,
                    "outcome": outcome.value,
                    "amount": amount,
                    "payment_intent": payment_intent,
                    "reason": reason,
                },
            )
            return booking

        via = ()
        if state == S.SCHEDULE_CONFIRMED and outcome == PaymentOutcome.SUCCEEDED:
            # checkout finished before we stored its reference
            via = (S.PAYMENT_PROCESSING,)
            if payment is None:
                payment = Payment(
                    booking_id=booking.id,
                    attempt=booking.payment_attempts + 1,
                    purpose="booking",
                    amount=amount if amount is not None else booking.amount,
                    currency=booking.currency,
                    stripe_session_id=payment_reference,
                )
                self.repo.add(payment)
        elif (state == S.PAYMENT_FAILED and outcome == PaymentOutcome.SUCCEEDED
              and booking.external_payment_ref == payment_reference):
            # the client retried inside the same checkout session
            via = (S.PAYMENT_PROCESSING,)
        elif state != S.PAYMENT_PROCESSING:
            raise StaleStateError(f"Payment outcome does not apply in {state}", booking_id=booking.id)
        elif booking.external_payment_ref != payment_reference:
            raise StaleStateError("Payment reference was superseded by a newer attempt", booking_id=booking.id)

        if outcome == PaymentOutcome.SUCCEEDED:
            return self._apply_payment_success(booking, payment, payment_reference, amount, payment_intent, via)
        return self._apply_payment_failure(booking, payment, reason)

    def _apply_payment_success(self, booking, payment, reference, amount, payment_intent, via=()):
        now = self._clock()
        if amount is not None and amount < booking.amount:
            logger.error(
                "Paid amount %s is below booking amount %s", amount, booking.amount,
                extra={"booking_id": booking.id, "provider": "stripe"},
            )
            attempt = booking.payment_attempts
            if S(booking.current_state) == S.SCHEDULE_CONFIRMED:
                attempt += 1
            return self._transition(
                booking, S.ERROR_WEBHOOK,
                payment_status=P.PENDING,
                via=via,
                data=ErrorData(
                    state=S.ERROR_WEBHOOK.value,
                    error_code="AMOUNT_MISMATCH",
                    message=f"Paid {amount}, expected {booking.amount}",
                    resume_state=S.PAYMENT_PROCESSING.value,
                    resume_payment_status=P.PENDING.value,
                    payment_reference=reference,
                    occurred_at=now,
                ),
                values={"external_payment_ref": reference, "payment_attempts": attempt},
            )

        if payment is not None:
            payment.status = "PAID"
            payment.paid_at = now
            payment.payment_intent_id = payment_intent
            if amount is not None:
                payment.amount = amount

        values = {"external_payment_ref": reference, "payment_intent_ref": payment_intent}
        if S(booking.current_state) == S.SCHEDULE_CONFIRMED:
            values["payment_attempts"] = booking.payment_attempts + 1
        return self._transition(
            booking, S.BOOKING_CONFIRMED,
            payment_status=P.PAID,
            via=(*via, S.PAYMENT_SUCCEEDED),
            data=BookingConfirmedData(confirmed_at=now),
            values=values,
        )

    def _apply_payment_failure(self, booking, payment, reason=None, via=()):
        if payment is not None:
            payment.status = "FAILED"
        if booking.payment_attempts >= self.settings.max_payment_attempts:
            logger.error(
                "Payment failed on the last allowed attempt", extra={"booking_id": booking.id, "reason": reason}
            )
            return self._transition(
                booking, S.ERROR_RECOVERY,
                payment_status=P.FAILED,
                via=(*via, S.PAYMENT_FAILED),
                data=RecoveryData(
                    error_state=S.PAYMENT_FAILED.value,
                    manual_intervention=True,
                    payment_reference=booking.external_payment_ref,
                    reason=reason or "payment attempts exhausted",
                ),
            )
        return self._transition(
            booking, S.PAYMENT_FAILED,
            payment_status=P.FAILED,
            via=via,
            data=PaymentFailedData(attempt=booking.payment_attempts, failure_reason=reason),
        )

    # ------------------------------------------------------------------
    # cancellation and refunds
    # ------------------------------------------------------------------
    def refund_amount_for(self, booking, initiator: str, now=None) -> int:
        refundable = self._refundable(booking)
        now = now or self._clock()
        notice = timedelta(hours=self.settings.refund_full_notice_hours)
        if initiator == "client" and booking.start_time - now < notice:
            return refundable * self.settings.late_cancel_refund_percent // 100
        return refundable

    def cancel_booking(self, booking_id: str, reason: str, initiator: str = "client", *, actor=None):
        booking = self.get_booking(booking_id)
        if booking.current_state != S.BOOKING_CONFIRMED:
            raise StaleStateError(f"Booking cannot be cancelled from {booking.current_state}",
                                  booking_id=booking.id)
        data = load_state_data(booking.state_data)
        if data is not None and data.pending_adjustment is not None:
            raise StaleStateError("A reschedule payment is still settling", booking_id=booking.id)

        now = self._clock()
        refund_amount = None
        if booking.payment_status == P.PAID:
            refund_amount = self.refund_amount_for(booking, initiator, now)

        booking = self._transition(
            booking, S.BOOKING_CANCELLED,
            data=BookingCancelledData(requested_refund_amount=refund_amount),
            values={"cancel_reason": reason, "cancelled_by": initiator, "cancelled_at": now},
            actor=actor,
        )
        if refund_amount:
            try:
                booking = self.initiate_refund(booking.id, refund_amount, actor=actor)
            except ProviderError as exc:
                # stays BOOKING_CANCELLED with the error recorded; refund can be retried
                logger.warning("Refund after cancellation failed: %s", exc.message,
                               extra={"booking_id": booking.id})
                booking = self.get_booking(booking.id)
        return booking

    def initiate_refund(self, booking_id: str, amount=None, *, actor=None):
        booking = self.get_booking(booking_id)
        if booking.current_state != S.BOOKING_CANCELLED:
            raise StaleStateError(f"Refunds start from a cancelled booking, not {booking.current_state}",
                                  booking_id=booking.id)
        if booking.payment_status != P.PAID:
            raise InvalidRefundAmount("Booking has no payment to refund", booking_id=booking.id)

        paid = self.repo.paid_payments(booking.id)
        refundable = sum(p.amount - p.refunded_amount for p in paid)
        if amount is None:
            data = load_state_data(booking.state_data)
            amount = (data.requested_refund_amount if data else None) or refundable
        amount = int(amount)
        if amount <= 0 or amount > refundable:
            raise InvalidRefundAmount(f"Refund must be between 1 and {refundable}", booking_id=booking.id)

        booking = self._transition(
            booking, S.REFUND_PENDING, data=RefundPendingData(refund_amount=amount), actor=actor
        )

        parts = []
        remaining = amount
        error = None
        for payment in paid:
            share = min(remaining, payment.amount - payment.refunded_amount)
            if share <= 0:
                continue
            try:
                refund_id = self.payments.create_refund(
                    payment.payment_intent_id or payment.stripe_session_id,
                    share,
                    metadata={"booking_id": booking.id, "payment_id": payment.id, "purpose": "cancellation"},
                    idempotency_key=f"refund-{booking.id}-{payment.id}-{payment.refunded_amount}",
                )
            except ProviderError as exc:
                error = exc
                break
            payment.refunded_amount += share
            parts.append(RefundPart(refund_id=refund_id, payment_id=payment.id, amount=share))
            remaining -= share
            if remaining <= 0:
                break

        if not parts:
            self._transition(
                booking, S.BOOKING_CANCELLED,
                data=BookingCancelledData(requested_refund_amount=amount, refund_error=error.message),
            )
            error.booking_id = booking.id
            raise error

        if error is not None:
            logger.warning("Refund only partly requested: %s", error.message, extra={"booking_id": booking.id})
        booking = self._update(booking, RefundPendingData(
            refund_amount=amount - remaining,
            parts=parts,
            refund_error=error.message if error else None,
        ))
        return self._drain_buffer(booking)

    def record_refund_outcome(self, booking_id: str, refund_id: str, succeeded: bool, amount=None, *,
                              event_id=None):
        # parts of one refund settle independently; a sibling part landing first is retried
        for attempt in range(1, REFUND_WRITE_ATTEMPTS + 1):
            try:
                return self._apply_refund_outcome(booking_id, refund_id, succeeded, amount, event_id)
            except ConcurrentUpdateError:
                if attempt == REFUND_WRITE_ATTEMPTS:
                    raise
                logger.info("Refund %s raced another update, retrying", refund_id,
                            extra={"booking_id": booking_id})

    def _apply_refund_outcome(self, booking_id, refund_id, succeeded, amount, event_id):
        booking = self.get_booking(booking_id)
        version = booking.version
        data = load_state_data(booking.state_data)
        state = booking.current_state

        if state == S.BOOKING_CONFIRMED and data is not None and data.pending_adjustment is not None:
            adj = data.pending_adjustment
            if adj.kind == "refund" and adj.refund_id == refund_id:
                return self._settle_refund_adjustment(booking, data, succeeded)

        if state == S.REFUND_COMPLETED:
            if data is not None and refund_id in data.refund_ids:
                return booking
            raise StaleStateError("Refund already completed", booking_id=booking.id)

        if state != S.REFUND_PENDING:
            raise StaleStateError(f"Refund outcome does not apply in {state}", booking_id=booking.id)

        part = next((p for p in data.parts if p.refund_id == refund_id), None)
        if part is None:
            # refund webhook beat the request that created it
            self._buffer(
                booking.correlation_token, "stripe",
                event_id or f"refund:{refund_id}:{'succeeded' if succeeded else 'failed'}",
                "refund_outcome",
                {"kind": REFUND_OUTCOME, "booking_id": booking.id, "refund_id": refund_id,
                 "succeeded": succeeded, "amount": amount},
            )
            return booking
        if part.status != "pending":
            return booking

        part.status = "succeeded" if succeeded else "failed"
        if not succeeded:
            payment = self._session.get(Payment, part.payment_id)
            payment.refunded_amount -= part.amount

        if any(p.status == "pending" for p in data.parts):
            return self._update(booking, data, version=version)

        done = [p for p in data.parts if p.status == "succeeded"]
        if not done:
            return self._transition(
                booking, S.BOOKING_CANCELLED,
                data=BookingCancelledData(
                    requested_refund_amount=data.refund_amount,
                    refund_error="Refund failed at the payment provider",
                ),
                version=version,
            )

        paid = self.repo.paid_payments(booking.id)
        total_paid = sum(p.amount for p in paid)
        total_refunded = sum(p.refunded_amount for p in paid)
        status = P.REFUNDED if total_refunded >= total_paid else P.PARTIALLY_REFUNDED
        return self._transition(
            booking, S.REFUND_COMPLETED,
            payment_status=status,
            data=RefundCompletedData(
                refund_amount=sum(p.amount for p in done),
                refund_ids=[p.refund_id for p in done],
                completed_at=self._clock(),
            ),
            values={"refunded_amount": total_refunded},
            version=version,
        )

    # ------------------------------------------------------------------
    # reschedule
    # ------------------------------------------------------------------
    def reschedule_booking(self, booking_id: str, new_start, new_end, external_event_ref: str,
                           new_session_type_id=None, *, actor=None, verify_availability=True) -> RescheduleResult:
        booking = self.get_booking(booking_id)
        if booking.current_state != S.BOOKING_CONFIRMED:
            raise StaleStateError(f"Booking cannot be rescheduled from {booking.current_state}",
                                  booking_id=booking.id)
        data = load_state_data(booking.state_data)
        if data.pending_adjustment is not None:
            raise StaleStateError("A previous reschedule is still settling", booking_id=booking.id)
        version = booking.version

        if new_session_type_id is not None and int(new_session_type_id) != booking.session_type_id:
            st = self._load_session_type(booking.builder_id, new_session_type_id)
        else:
            st = booking.session_type
        start, end = self._check_window(st, new_start, new_end, exclude_id=booking.id)
        if verify_availability and not self._slot_available(st, start, end):
            raise InvalidTimeSlot("That time is no longer available, please pick another", booking_id=booking.id)

        new_amount = st.price if st.id != booking.session_type_id else booking.amount
        if new_amount == booking.amount:
            booking = self._transition(
                booking, S.BOOKING_CONFIRMED,
                via=(S.BOOKING_RESCHEDULED,),
                data=BookingConfirmedData(confirmed_at=data.confirmed_at, reschedule_count=data.reschedule_count + 1),
                values={
                    "start_time": start,
                    "end_time": end,
                    "external_event_ref": external_event_ref,
                    "session_type_id": st.id,
                },
                actor=actor,
                version=version,
            )
            return RescheduleResult(booking=booking)

        diff = new_amount - booking.amount
        adj = PriceAdjustment(
            kind="charge" if diff > 0 else "refund",
            amount=abs(diff),
            new_amount=new_amount,
            new_session_type_id=st.id,
            new_start=start,
            new_end=end,
            new_event_ref=external_event_ref,
        )
        data.pending_adjustment = adj
        # claims the booking; a second reschedule now sees the pending adjustment
        booking = self._update(booking, data, version=version)

        try:
            if adj.kind == "charge":
                booking = self._request_charge(booking, data, st)
            else:
                booking = self._request_refund(booking, data)
        except BookingError:
            self._drop_adjustment(booking.id, adj)
            raise

        log_event(
            "BOOKING_ADJUSTMENT_REQUESTED",
            user_id=actor,
            entity="booking",
            entity_id=booking.id,
            metadata={"kind": adj.kind, "amount": adj.amount, "new_amount": new_amount},
        )
        return RescheduleResult(booking=booking, adjustment=adj.kind, checkout_url=adj.checkout_url)

    def _drop_adjustment(self, booking_id, adj):
        """Clear ``adj`` after a failed provider request, if it is still the booking's pending adjustment."""
        booking = self.get_booking(booking_id)
        self._session.refresh(booking)
        data = load_state_data(booking.state_data)
        current = data.pending_adjustment if booking.current_state == S.BOOKING_CONFIRMED and data else None
        if current is None or current.id != adj.id:
            return
        if adj.payment_reference or adj.refund_id:
            # the provider accepted the request; settling needs that reference
            logger.error("Adjustment %s was sent but not stored", adj.payment_reference or adj.refund_id,
                         extra={"booking_id": booking_id, "state": booking.current_state})
            return
        data.pending_adjustment = None
        self._update(booking, data)

    def _request_charge(self, booking, data, st):
        adj = data.pending_adjustment
        attempt = data.reschedule_count + 1
        checkout = self.payments.create_checkout_session(
            booking.id,
            adj.amount,
            booking.currency,
            append_query(self.settings.success_url, {"booking_id": booking.id}),
            append_query(self.settings.cancel_url, {"booking_id": booking.id}),
            description=f"Reschedule to {st.title}",
            metadata={
                "booking_id": booking.id,
                "builder_id": booking.builder_id,
                "client_id": booking.client_id,
                "session_type_id": st.id,
                "purpose": "adjustment",
            },
            idempotency_key=f"adjustment-{booking.id}-{attempt}",
        )
        self.repo.add(Payment(
            booking_id=booking.id,
            attempt=attempt,
            purpose="adjustment",
            amount=adj.amount,
            currency=booking.currency,
            status="INIT",
            stripe_session_id=checkout.session_id,
        ))
        adj.payment_reference = checkout.session_id
        adj.checkout_url = checkout.url
        return self._update(booking, data)

    def _request_refund(self, booking, data):
        adj = data.pending_adjustment
        payment = next(
            (p for p in self.repo.paid_payments(booking.id) if p.amount - p.refunded_amount >= adj.amount),
            None,
        )
        if payment is None:
            raise InvalidRefundAmount("No single payment covers the price difference", booking_id=booking.id)
        refund_id = self.payments.create_refund(
            payment.payment_intent_id or payment.stripe_session_id,
            adj.amount,
            metadata={"booking_id": booking.id, "payment_id": payment.id, "purpose": "adjustment"},
            idempotency_key=f"adjustment-refund-{booking.id}-{data.reschedule_count + 1}",
        )
        payment.refunded_amount += adj.amount
        adj.refund_id = refund_id
        adj.refund_payment_id = payment.id
        return self._update(booking, data)

    def _settle_charge(self, booking, payment, outcome, amount, payment_intent):
        data = load_state_data(booking.state_data)
        adj = data.pending_adjustment if booking.current_state == S.BOOKING_CONFIRMED and data else None
        if adj is None or adj.payment_reference != payment.stripe_session_id:
            if payment.status != "INIT":
                return booking
            raise StaleStateError("No reschedule is waiting on this payment", booking_id=booking.id)

        if outcome == PaymentOutcome.SUCCEEDED and (amount is None or amount >= adj.amount):
            payment.status = "PAID"
            payment.paid_at = self._clock()
            payment.payment_intent_id = payment_intent
            return self._apply_adjustment(booking, data, P.PAID)

        if outcome == PaymentOutcome.SUCCEEDED:
            logger.error("Adjustment paid %s, expected %s", amount, adj.amount, extra={"booking_id": booking.id})
        payment.status = "FAILED"
        data.pending_adjustment = None
        return self._update(booking, data)

    def _settle_refund_adjustment(self, booking, data, succeeded):
        adj = data.pending_adjustment
        if succeeded:
            status = P.EXEMPT if adj.new_amount == 0 else P.PAID
            return self._apply_adjustment(booking, data, status)
        payment = self._session.get(Payment, adj.refund_payment_id)
        payment.refunded_amount -= adj.amount
        data.pending_adjustment = None
        return self._update(booking, data)

    def _apply_adjustment(self, booking, data, payment_status):
        adj = data.pending_adjustment
        refunded = sum(p.refunded_amount for p in self.repo.paid_payments(booking.id))
        return self._transition(
            booking, S.BOOKING_CONFIRMED,
            payment_status=payment_status,
            via=(S.BOOKING_RESCHEDULED,),
            data=BookingConfirmedData(confirmed_at=data.confirmed_at, reschedule_count=data.reschedule_count + 1),
            values={
                "start_time": adj.new_start,
                "end_time": adj.new_end,
                "external_event_ref": adj.new_event_ref,
                "session_type_id": adj.new_session_type_id,
                "amount": adj.new_amount,
                "refunded_amount": refunded,
            },
        )

    # ------------------------------------------------------------------
    # recovery
    # ------------------------------------------------------------------
    def recover_booking(self, booking_id: str, *, actor=None):
        booking = self.get_booking(booking_id)
        if booking.current_state == S.ERROR_RECOVERY:
            data = load_state_data(booking.state_data)
            if data is not None and data.manual_intervention:
                raise ManualInterventionRequired("Booking needs manual intervention", booking_id=booking.id)
            raise StaleStateError("Booking is not in a recoverable error state", booking_id=booking.id)
        if booking.current_state not in ERROR_STATES:
            raise StaleStateError("Booking is not in an error state", booking_id=booking.id)

        err = load_state_data(booking.state_data)
        attempts = err.recovery_attempts + 1
        booking = self._transition(
            booking, S.ERROR_RECOVERY,
            data=RecoveryData(
                error_state=err.state,
                resume_state=err.resume_state,
                resume_payment_status=err.resume_payment_status,
                recovery_attempts=attempts,
                payment_reference=err.payment_reference,
            ),
            actor=actor,
        )

        failure = None
        try:
            resumed = self._attempt_resume(booking, err)
        except ProviderError as exc:
            resumed = None
            failure = exc.message
        if resumed is not None:
            logger.info("Booking recovered", extra={"booking_id": booking.id, "state": resumed.current_state})
            return resumed

        failure = failure or "recovery check did not pass"
        if attempts >= self.settings.max_recovery_attempts:
            self._update(booking, RecoveryData(
                error_state=err.state,
                resume_state=err.resume_state,
                resume_payment_status=err.resume_payment_status,
                recovery_attempts=attempts,
                payment_reference=err.payment_reference,
                manual_intervention=True,
                reason=failure,
            ))
            logger.error("Recovery exhausted: %s", failure, extra={"booking_id": booking.id})
            raise ManualInterventionRequired("Automatic recovery failed", booking_id=booking.id)

        return self._transition(
            booking, S(err.state),
            data=err.model_copy(update={"recovery_attempts": attempts, "message": failure}),
        )

    def _attempt_resume(self, booking, err):
        error_state = S(err.state)
        resume_status = P(err.resume_payment_status)

        if error_state == S.ERROR_SCHEDULING:
            st = booking.session_type
            if self.repo.has_overlap(booking.builder_id, booking.start_time, booking.end_time,
                                     exclude_id=booking.id):
                return None
            if not self._slot_available(st, booking.start_time, booking.end_time):
                return None
            booking = self._transition(
                booking, S.SCHEDULED_PENDING_CONFIRMATION,
                payment_status=resume_status,
                data=PendingConfirmationData(proposed_event_ref=err.proposed_event_ref),
            )
            return self._drain_buffer(booking)

        if error_state == S.ERROR_PAYMENT:
            if S(err.resume_state) == S.PAYMENT_FAILED:
                data = PaymentFailedData(attempt=booking.payment_attempts, failure_reason=err.message)
            else:
                data = ScheduleConfirmedData(confirmed_at=self._clock())
            return self._transition(booking, S(err.resume_state), payment_status=resume_status, data=data)

        # ERROR_WEBHOOK: ask the processor what actually happened
        status = self.payments.get_checkout_session(err.payment_reference)
        paid = status.payment_status == "paid" and (status.amount_total or 0) >= booking.amount
        if not paid and status.status != "expired":
            return None
        booking = self._transition(
            booking, S.PAYMENT_PROCESSING,
            payment_status=P.PENDING,
            data=PaymentProcessingData(attempt=booking.payment_attempts),
        )
        payment = self.repo.payment_by_reference(err.payment_reference)
        if paid:
            return self._apply_payment_success(
                booking, payment, err.payment_reference, status.amount_total, status.payment_intent
            )
        return self._apply_payment_failure(booking, payment, "checkout expired")

    # ------------------------------------------------------------------
    # early webhooks
    # ------------------------------------------------------------------
    def _buffer(self, correlation_token, provider, event_id, event_type, payload):
        self.buffer.add(correlation_token, provider, event_id, event_type, payload, now=self._clock())
        logger.info(
            "Buffered %s until the booking can take it", event_type,
            extra={"event_id": event_id, "provider": provider},
        )

    def _buffer_ready(self, booking, payload) -> bool:
        state = booking.current_state
        kind = payload["kind"]
        if kind == SCHEDULING_CONFIRMED:
            return state == S.SCHEDULED_PENDING_CONFIRMATION
        if kind == PAYMENT_OUTCOME:
            return state in (S.SCHEDULE_CONFIRMED, S.PAYMENT_PROCESSING, S.PAYMENT_FAILED)
        if kind == REFUND_OUTCOME:
            data = load_state_data(booking.state_data)
            return state == S.REFUND_PENDING and any(p.refund_id == payload["refund_id"] for p in data.parts)
        return False

    def _replay(self, booking, payload):
        kind = payload["kind"]
        if kind == SCHEDULING_CONFIRMED:
            return self.confirm_external_scheduling(
                booking.id, payload["external_event_ref"], invitee_ref=payload.get("invitee_ref")
            )
        if kind == PAYMENT_OUTCOME:
            return self.record_payment_outcome(
                booking.id, payload["payment_reference"], payload["outcome"], payload.get("amount"),
                payload.get("payment_intent"), reason=payload.get("reason"),
            )
        return self.record_refund_outcome(
            booking.id, payload["refund_id"], payload["succeeded"], payload.get("amount")
        )

    def _drain_buffer(self, booking):
        """Apply buffered events that the booking's current state can now accept, oldest first."""
        progressed = True
        while progressed:
            progressed = False
            for row in self.buffer.pending(booking.correlation_token, now=self._clock()):
                payload = dict(row.payload)
                if not self._buffer_ready(booking, payload):
                    continue
                event_id = row.event_id
                self.buffer.remove(row)
                try:
                    self._replay(booking, payload)
                except BookingError as exc:
                    logger.warning(
                        "Dropped buffered event: %s", exc.message,
                        extra={"booking_id": booking.id, "event_id": event_id},
                    )
                    log_event("WEBHOOK_DISCARDED", entity="booking", entity_id=booking.id,
                              metadata={"event_id": event_id, "reason": exc.message})
                booking = self.get_booking(booking.id)
                progressed = True
                break
        return booking

    # ------------------------------------------------------------------
    # TTL sweep
    # ------------------------------------------------------------------
    def expire_stale(self, now=None) -> SweepResult:
        now = now or self._clock()
        result = SweepResult()

        cutoff = now - timedelta(seconds=self.settings.pending_booking_ttl_seconds)
        # abandoned before payment; the builder gets the slot back
        for booking in self.repo.stale_unconfirmed([s.value for s in RELEASABLE], cutoff):
            try:
                self.release_unconfirmed(booking.id, f"{booking.current_state} timed out")
            except StaleStateError:
                continue
            result.released += 1

        for row in self.buffer.pop_expired(now):
            logger.warning(
                "Buffered %s expired without a booking", row.event_type,
                extra={"event_id": row.event_id, "provider": row.provider, "state": S.ERROR_WEBHOOK.value},
            )
            log_event(
                "WEBHOOK_DISCARDED",
                entity="correlation",
                entity_id=row.correlation_token,
                metadata={
                    "state": S.ERROR_WEBHOOK.value,
                    "provider": row.provider,
                    "event_id": row.event_id,
                    "event_type": row.event_type,
                },
            )
            result.buffered_discarded += 1

        retention = timedelta(hours=self.settings.webhook_event_retention_hours)
        result.events_purged = self.repo.purge_events(now - retention)
        return result
