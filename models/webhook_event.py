from datetime import datetime
from models.db import db

class ProcessedWebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(20), nullable=False)  # calendly, stripe
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(80), nullable=False)
    received_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        # Redelivered events hit this constraint and are dropped
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_event_once"),
    )


class BufferedWebhook(db.Model):
    __tablename__ = "buffered_webhooks"

    id = db.Column(db.Integer, primary_key=True)
    correlation_token = db.Column(db.String(64), nullable=False, index=True)
    provider = db.Column(db.String(20), nullable=False)
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(80), nullable=False)
    payload = db.Column(db.JSON, nullable=False)

    received_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
