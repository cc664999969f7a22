import uuid
from datetime import datetime
from models.db import db


def _new_booking_id() -> str:
    return uuid.uuid4().hex


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.String(32), primary_key=True, default=_new_booking_id)

    builder_id = db.Column(db.String(64), nullable=False, index=True)
    # nullable until an anonymous client claims the booking
    client_id = db.Column(db.String(64), nullable=True, index=True)
    client_email = db.Column(db.String(255), nullable=True)
    client_timezone = db.Column(db.String(64), nullable=True)
    session_type_id = db.Column(db.Integer, db.ForeignKey("session_types.id"), nullable=False, index=True)

    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=False)

    current_state = db.Column(db.String(40), nullable=False, index=True)
    payment_status = db.Column(db.String(20), nullable=False, default="UNPAID")

    amount = db.Column(db.Integer, nullable=False)  # smallest unit, snapshot of SessionType.price
    currency = db.Column(db.String(10), nullable=False, default="usd")

    external_event_ref = db.Column(db.String(255), nullable=True, index=True)
    external_payment_ref = db.Column(db.String(255), nullable=True, index=True)
    payment_intent_ref = db.Column(db.String(255), nullable=True)
    correlation_token = db.Column(db.String(64), nullable=False, unique=True, index=True)

    payment_attempts = db.Column(db.Integer, nullable=False, default=0)
    refunded_amount = db.Column(db.Integer, nullable=False, default=0)

    cancel_reason = db.Column(db.String(255), nullable=True)
    cancelled_by = db.Column(db.String(40), nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    state_data = db.Column(db.JSON, nullable=True)
    # bumped by every conditional update
    version = db.Column(db.Integer, nullable=False, default=1)
    last_transition = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    session_type = db.relationship("SessionType", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "builder_id": self.builder_id,
            "client_id": self.client_id,
            "session_type_id": self.session_type_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "state": self.current_state,
            "payment_status": self.payment_status,
            "amount": self.amount,
            "currency": self.currency,
            "external_event_ref": self.external_event_ref,
            "external_payment_ref": self.external_payment_ref,
            "payment_attempts": self.payment_attempts,
            "refunded_amount": self.refunded_amount,
            "cancel_reason": self.cancel_reason,
            "cancelled_by": self.cancelled_by,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "state_data": self.state_data,
            "last_transition": self.last_transition.isoformat(),
            "created_at": self.created_at.isoformat(),
        }
