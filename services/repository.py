from datetime import datetime

from sqlalchemy.exc import IntegrityError

from models import Booking, BufferedWebhook, Payment, ProcessedWebhookEvent, SessionType
from services.errors import ConcurrentUpdateError, StaleStateError
from utils.clock import utcnow

# bookings in these states no longer hold their time slot
RELEASED_STATES = ("BOOKING_CANCELLED", "REFUND_PENDING", "REFUND_COMPLETED", "ERROR_RECOVERY")


class BookingRepository:
    """get / create / conditional update access to booking rows."""

    def __init__(self, session):
        self._session = session

    # ---------- reads ----------
    def get(self, booking_id: str):
        return self._session.get(Booking, booking_id)

    def get_by_correlation_token(self, token: str):
        return self._session.query(Booking).filter_by(correlation_token=token).first()

    def get_by_event_ref(self, event_ref: str):
        return self._session.query(Booking).filter_by(external_event_ref=event_ref).first()

    def get_session_type(self, session_type_id):
        return self._session.get(SessionType, int(session_type_id))

    def has_overlap(self, builder_id: str, start: datetime, end: datetime, exclude_id: str | None = None) -> bool:
        q = (
            self._session.query(Booking)
            .filter(Booking.builder_id == builder_id)
            .filter(Booking.current_state.notin_(RELEASED_STATES))
            .filter(Booking.start_time < end, Booking.end_time > start)
        )
        if exclude_id:
            q = q.filter(Booking.id != exclude_id)
        return q.first() is not None

    def stale_unconfirmed(self, states, changed_before: datetime):
        """Bookings parked in one of ``states`` since before ``changed_before``."""
        return (
            self._session.query(Booking)
            .filter(Booking.current_state.in_(states))
            .filter(Booking.last_transition < changed_before)
            .all()
        )

    def payment_by_reference(self, reference: str):
        return self._session.query(Payment).filter_by(stripe_session_id=reference).first()

    def paid_payments(self, booking_id: str):
        return (
            self._session.query(Payment)
            .filter_by(booking_id=booking_id, status="PAID")
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .all()
        )

    # ---------- writes ----------
    def create(self, **fields) -> Booking:
        booking = Booking(**fields)
        self._session.add(booking)
        self._session.commit()
        return booking

    def add(self, row) -> None:
        # flushed by the next compare_and_set or commit
        self._session.add(row)

    def commit(self) -> None:
        self._session.commit()

    def compare_and_set(self, booking_id: str, expected_state: str, values: dict,
                        expected_version: int | None = None) -> Booking:
        """
        UPDATE bookings SET ..., version = version + 1
        WHERE id = :id AND current_state = :expected [AND version = :version].

        Raises StaleStateError when no row matched, so two writers racing on
        the same booking can never both win. When the state still matches but
        the version moved, ConcurrentUpdateError says a same-state write got
        there first and the caller may re-read and retry.
        """
        values = dict(values)
        values.setdefault("updated_at", utcnow())
        values["version"] = Booking.version + 1
        q = self._session.query(Booking).filter(Booking.id == booking_id, Booking.current_state == expected_state)
        if expected_version is not None:
            q = q.filter(Booking.version == expected_version)
        rows = q.update(values, synchronize_session=False)
        if rows != 1:
            self._session.rollback()
            current = self._session.get(Booking, booking_id)
            if current is not None and current.current_state == expected_state:
                raise ConcurrentUpdateError(
                    "Booking was changed by another request; re-fetch and retry", booking_id=booking_id
                )
            raise StaleStateError(
                f"Booking is no longer in {expected_state}; re-fetch and retry",
                booking_id=booking_id,
            )
        self._session.commit()
        booking = self._session.get(Booking, booking_id)
        self._session.refresh(booking)
        return booking

    # ---------- webhook idempotency ----------
    def claim_event(self, provider: str, event_id: str, event_type: str) -> bool:
        """Record a webhook event id. False when it was already processed."""
        self._session.add(ProcessedWebhookEvent(provider=provider, event_id=event_id, event_type=event_type))
        try:
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            return False
        return True

    def release_event(self, provider: str, event_id: str) -> None:
        self._session.query(ProcessedWebhookEvent).filter_by(provider=provider, event_id=event_id).delete()
        self._session.commit()

    def purge_events(self, received_before: datetime) -> int:
        count = (
            self._session.query(ProcessedWebhookEvent)
            .filter(ProcessedWebhookEvent.received_at < received_before)
            .delete(synchronize_session=False)
        )
        self._session.commit()
        return count


class WebhookBuffer:
    """Holds provider events that arrived before their booking could take them."""

    def __init__(self, session, ttl_seconds: int):
        self._session = session
        self.ttl_seconds = ttl_seconds

    def add(self, correlation_token: str, provider: str, event_id: str, event_type: str, payload: dict,
            now: datetime | None = None) -> BufferedWebhook:
        from datetime import timedelta

        now = now or utcnow()
        existing = (
            self._session.query(BufferedWebhook)
            .filter_by(provider=provider, event_id=event_id)
            .first()
        )
        if existing:
            return existing
        row = BufferedWebhook(
            correlation_token=correlation_token,
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            received_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        self._session.add(row)
        self._session.commit()
        return row

    def pending(self, correlation_token: str, now: datetime | None = None) -> list[BufferedWebhook]:
        now = now or utcnow()
        return (
            self._session.query(BufferedWebhook)
            .filter(BufferedWebhook.correlation_token == correlation_token)
            .filter(BufferedWebhook.expires_at > now)
            .order_by(BufferedWebhook.received_at.asc(), BufferedWebhook.id.asc())
            .all()
        )

    def remove(self, row: BufferedWebhook) -> None:
        self._session.delete(row)
        self._session.commit()

    def pop_expired(self, now: datetime | None = None) -> list[BufferedWebhook]:
        now = now or utcnow()
        rows = self._session.query(BufferedWebhook).filter(BufferedWebhook.expires_at <= now).all()
        for row in rows:
            self._session.delete(row)
        self._session.commit()
        return rows
