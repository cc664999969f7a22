from datetime import datetime
from models.db import db

class SessionType(db.Model):
    __tablename__ = "session_types"

    id = db.Column(db.Integer, primary_key=True)
    builder_id = db.Column(db.String(64), nullable=False, index=True)

    title = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=False)

    price = db.Column(db.Integer, nullable=False, default=0)  # smallest unit (cents)
    currency = db.Column(db.String(10), nullable=False, default="usd")
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # Calendly event type URI + public scheduling link
    external_event_type_ref = db.Column(db.String(255), nullable=True)
    scheduling_url = db.Column(db.String(255), nullable=True)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_free(self) -> bool:
        return int(self.price or 0) == 0

    def to_dict(self):
        return {
            "id": self.id,
            "builder_id": self.builder_id,
            "title": self.title,
            "description": self.description,
            "duration_minutes": self.duration_minutes,
            "price": self.price,
            "currency": self.currency,
            "is_active": self.is_active,
            "external_event_type_ref": self.external_event_type_ref,
            "scheduling_url": self.scheduling_url,
            "version": self.version,
        }
