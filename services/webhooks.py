"""
Webhook ingestion: verify -> parse -> dedupe -> dispatch.

Nothing reaches the coordinator until the signature and the payload schema
have both been checked. Each provider event id is processed at most once.
"""
import json
import logging

from pydantic import ValidationError as SchemaError

from schemas.webhooks import (
    CALENDLY_EVENT_TYPES,
    STRIPE_EVENT_TYPES,
    CheckoutCompleted,
    CheckoutExpired,
    InviteeCreated,
    PaymentFailed,
    calendly_event_id,
    calendly_events,
    stripe_events,
)
from security.webhook_signature import verify_calendly, verify_stripe
from services.coordinator import RELEASABLE, PaymentOutcome
from services.errors import (
    ConcurrentUpdateError,
    MalformedWebhookError,
    ManualInterventionRequired,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from services.states import BookingState as S

logger = logging.getLogger(__name__)

# retrying these cannot change the outcome, so the event counts as handled
SETTLED_ERRORS = (StaleStateError, NotFoundError, ValidationError, ManualInterventionRequired)


class WebhookIngestor:
    def __init__(self, coordinator, *, calendly_signing_key=None, stripe_webhook_secret=None, tolerance=300):
        self.coordinator = coordinator
        self.repo = coordinator.repo
        self.calendly_signing_key = calendly_signing_key
        self.stripe_webhook_secret = stripe_webhook_secret
        self.tolerance = tolerance

    # ---------- boundary ----------
    def _load_json(self, payload: bytes) -> dict:
        try:
            raw = json.loads(payload)
        except ValueError:
            raise MalformedWebhookError("Webhook body is not valid JSON")
        if not isinstance(raw, dict):
            raise MalformedWebhookError("Webhook body must be a JSON object")
        return raw

    def handle_calendly(self, payload: bytes, signature: str, now=None) -> dict:
        verify_calendly(payload, signature, self.calendly_signing_key, self.tolerance, now=now)
        raw = self._load_json(payload)

        event_type = raw.get("event")
        if event_type not in CALENDLY_EVENT_TYPES:
            logger.info("Ignoring Calendly event %s", event_type, extra={"provider": "calendly"})
            return {"received": True, "ignored": True}
        try:
            event = calendly_events.validate_python(raw)
        except SchemaError as e:
            raise MalformedWebhookError(f"Invalid {event_type} payload: {e.error_count()} schema errors")

        event_id = calendly_event_id(event)
        return self._process("calendly", event_id, event.event, lambda: self._dispatch_calendly(event, event_id))

    def handle_stripe(self, payload: bytes, signature: str) -> dict:
        verify_stripe(payload, signature, self.stripe_webhook_secret, self.tolerance)
        raw = self._load_json(payload)

        event_type = raw.get("type")
        if event_type not in STRIPE_EVENT_TYPES:
            logger.info("Ignoring Stripe event %s", event_type, extra={"provider": "stripe"})
            return {"received": True, "ignored": True}
        try:
            event = stripe_events.validate_python(raw)
        except SchemaError as e:
            raise MalformedWebhookError(f"Invalid {event_type} payload: {e.error_count()} schema errors")

        return self._process("stripe", event.id, event.type, lambda: self._dispatch_stripe(event))

    def _process(self, provider: str, event_id: str, event_type: str, dispatch) -> dict:
        if not self.repo.claim_event(provider, event_id, event_type):
            logger.info("Duplicate %s delivery", event_type, extra={"event_id": event_id, "provider": provider})
            return {"received": True, "duplicate": True}

        try:
            dispatch()
        except ConcurrentUpdateError:
            self.repo.release_event(provider, event_id)
            raise
        except SETTLED_ERRORS as exc:
            logger.info(
                "%s not applied: %s", event_type, exc.message,
                extra={"event_id": event_id, "provider": provider, "booking_id": exc.booking_id},
            )
        except Exception:
            # let the provider redeliver
            self.repo.release_event(provider, event_id)
            raise
        return {"received": True}

    # ---------- dispatch ----------
    def _dispatch_calendly(self, event, event_id: str) -> None:
        invitee = event.payload
        token = invitee.tracking.utm_content
        event_ref = invitee.scheduled_event.uri

        if isinstance(event, InviteeCreated):
            booking = self.repo.get_by_correlation_token(token) if token else None
            if booking is None and invitee.old_invitee:
                booking = self.repo.get_by_event_ref(invitee.old_invitee.split("/invitees/")[0])
            if (booking is not None and booking.current_state == S.BOOKING_CONFIRMED
                    and booking.external_event_ref != event_ref):
                # moved inside Calendly; the slot is already held there
                self.coordinator.reschedule_booking(
                    booking.id, invitee.scheduled_event.start_time, invitee.scheduled_event.end_time, event_ref,
                    verify_availability=False,
                )
                return
            if not token:
                logger.warning("invitee.created without a booking reference", extra={"event_id": event_id})
                return
            self.coordinator.scheduling_confirmed(token, event_ref, invitee_ref=invitee.uri, event_id=event_id)
            return

        if invitee.rescheduled:
            # the invitee.created for the new event moves the booking
            logger.info("Ignoring cancel that is part of a reschedule", extra={"event_id": event_id})
            return

        booking = self.repo.get_by_correlation_token(token) if token else None
        if booking is None:
            booking = self.repo.get_by_event_ref(event_ref)
        if booking is None:
            logger.info("invitee.canceled for unknown booking", extra={"event_id": event_id})
            return

        if booking.current_state == S.BOOKING_CONFIRMED:
            self.coordinator.cancel_booking(
                booking.id, "Cancelled in scheduling provider", initiator="scheduling_provider"
            )
        elif booking.current_state in RELEASABLE:
            self.coordinator.release_unconfirmed(
                booking.id, "Cancelled in scheduling provider", initiator="scheduling_provider"
            )
        else:
            raise StaleStateError(f"Cancel ignored in {booking.current_state}", booking_id=booking.id)

    def _dispatch_stripe(self, event) -> None:
        obj = event.data.object
        booking_id = obj.metadata.get("booking_id")
        if not booking_id:
            logger.warning("%s without booking metadata", event.type, extra={"event_id": event.id})
            return

        if isinstance(event, CheckoutCompleted):
            if obj.payment_status not in ("paid", "no_payment_required"):
                # delayed payment methods report later through the same reference
                logger.info("Checkout completed but not paid yet", extra={"event_id": event.id})
                return
            self.coordinator.record_payment_outcome(
                booking_id, obj.id, PaymentOutcome.SUCCEEDED, obj.amount_total, obj.payment_intent,
                event_id=event.id,
            )
        elif isinstance(event, CheckoutExpired):
            self.coordinator.record_payment_outcome(
                booking_id, obj.id, PaymentOutcome.FAILED, reason="checkout expired", event_id=event.id
            )
        elif isinstance(event, PaymentFailed):
            if obj.metadata.get("purpose") == "adjustment":
                return
            booking = self.coordinator.get_booking(booking_id)
            if not booking.external_payment_ref:
                raise StaleStateError("No checkout to fail", booking_id=booking_id)
            attempt = obj.metadata.get("attempt")
            if attempt is not None and attempt != str(booking.payment_attempts):
                raise StaleStateError(f"Failure belongs to superseded attempt {attempt}", booking_id=booking_id)
            reason = (obj.last_payment_error or {}).get("message")
            self.coordinator.record_payment_outcome(
                booking_id, booking.external_payment_ref, PaymentOutcome.FAILED, reason=reason,
                event_id=event.id,
            )
        else:
            if obj.status == "succeeded":
                succeeded = True
            elif obj.status in ("failed", "canceled"):
                succeeded = False
            else:
                logger.info("Refund %s still %s", obj.id, obj.status, extra={"event_id": event.id})
                return
            self.coordinator.record_refund_outcome(
                booking_id, obj.id, succeeded, obj.amount, event_id=event.id
            )
