from datetime import timedelta

import pytest

from app import create_app
from config import Config
from models import db
from models.session_type import SessionType
from tests.fakes import FakePayments, FakeScheduling
from utils.clock import utcnow

BUILDER = "builder-1"
CLIENT = "client-1"
EVENT_REF = "https://api.calendly.com/scheduled_events/EV1"


class SandboxConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    CALENDLY_WEBHOOK_SIGNING_KEY = "calendly-test-key"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    STRIPE_SUCCESS_URL = "https://app.test/pay/success"
    STRIPE_CANCEL_URL = "https://app.test/pay/cancel"


@pytest.fixture
def scheduling():
    return FakeScheduling()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def app(scheduling, payments):
    app = create_app(SandboxConfig, scheduling=scheduling, payments=payments)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def coordinator(app):
    return app.extensions["booking_coordinator"]


@pytest.fixture
def make_session_type(app):
    def _make(price=5000, duration=60, builder_id=BUILDER, title="Code review", **kwargs):
        st = SessionType(
            builder_id=builder_id,
            title=title,
            duration_minutes=duration,
            price=price,
            currency="usd",
            external_event_type_ref=kwargs.pop("event_type_ref", "https://api.calendly.com/event_types/ET1"),
            scheduling_url=kwargs.pop("scheduling_url", "https://calendly.com/builder-1/review"),
            **kwargs,
        )
        db.session.add(st)
        db.session.commit()
        return st

    return _make


def slot_in(hours, duration=60):
    start = (utcnow() + timedelta(hours=hours)).replace(second=0, microsecond=0)
    return start, start + timedelta(minutes=duration)


def slot(days=3, hour=15, duration=60):
    start = (utcnow() + timedelta(days=days)).replace(hour=hour, minute=0, second=0, microsecond=0)
    return start, start + timedelta(minutes=duration)


@pytest.fixture
def scheduled(coordinator):
    """Creates a booking in SCHEDULED_PENDING_CONFIRMATION for a session type."""

    def _scheduled(st, days=3, hour=15, client_id=CLIENT, event_ref=EVENT_REF, window=None):
        draft = coordinator.begin_session_selection(st.builder_id, st.id)
        start, end = window or slot(days, hour, st.duration_minutes)
        return coordinator.record_external_scheduling(draft, start, end, event_ref, client_id=client_id)

    return _scheduled


@pytest.fixture
def paid_booking(coordinator, scheduled, payments):
    """Runs a booking all the way to BOOKING_CONFIRMED / PAID."""

    def _paid(st, days=3, hour=15, window=None):
        booking = scheduled(st, days=days, hour=hour, window=window)
        coordinator.confirm_external_scheduling(booking.id, EVENT_REF)
        started = coordinator.initiate_payment(booking.id)
        return coordinator.record_payment_outcome(
            booking.id, started.payment_reference, "SUCCEEDED", st.price, "pi_test_1"
        )

    return _paid
