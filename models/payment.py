from datetime import datetime
from models.db import db

class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.String(32), db.ForeignKey("bookings.id"), nullable=False, index=True)

    attempt = db.Column(db.Integer, nullable=False, default=1)
    purpose = db.Column(db.String(20), nullable=False, default="booking")  # booking, adjustment

    provider = db.Column(db.String(20), nullable=False, default="STRIPE")
    amount = db.Column(db.Integer, nullable=False)   # smallest unit
    currency = db.Column(db.String(10), nullable=False, default="usd")

    status = db.Column(db.String(20), nullable=False, default="INIT")  # INIT, PAID, FAILED
    refunded_amount = db.Column(db.Integer, nullable=False, default=0)
    stripe_session_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    payment_intent_id = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
