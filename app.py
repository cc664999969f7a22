import logging

from flask import Flask, jsonify
from config import Config, validate_config
from routes import health_bp, session_types_bp, bookings_bp, webhook_bp, pay_pages_bp

from models import db
from flask_migrate import Migrate
from sqlalchemy.orm.exc import StaleDataError
from adapters.payments import StripePayments
from adapters.scheduling import CalendlyScheduling
from services.coordinator import BookingCoordinator, CoordinatorSettings
from services.errors import BookingError
from services.webhooks import WebhookIngestor
from utils.auth_context import load_current_user

logger = logging.getLogger(__name__)


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        extras = []
        for key in ("booking_id", "state", "event_id", "provider", "reference", "reason"):
            value = getattr(record, key, None)
            if value not in (None, ""):
                extras.append(f"{key}={value}")
        base = super().format(record)
        if extras:
            return f"{base} | " + " ".join(extras)
        return base


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(ContextFormatter("%(asctime)s %(levelname)s:%(name)s:%(message)s"))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)


def create_app(config_object=Config, scheduling=None, payments=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    validate_config(app.config)
    if not app.config.get("TESTING"):
        configure_logging(app.config["LOG_LEVEL"])

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(session_types_bp)
    app.register_blueprint(bookings_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(pay_pages_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Providers are built once here and handed to the coordinator
    if scheduling is None:
        scheduling = CalendlyScheduling(
            app.config["CALENDLY_ACCESS_TOKEN"],
            base_url=app.config["CALENDLY_BASE_URL"],
            timeout=app.config["SCHEDULING_TIMEOUT_SECONDS"],
            retry_attempts=app.config["PROVIDER_RETRY_ATTEMPTS"],
            retry_base_delay=app.config["PROVIDER_RETRY_BASE_DELAY"],
        )
    if payments is None:
        payments = StripePayments(
            app.config["STRIPE_SECRET_KEY"],
            timeout=app.config["PAYMENT_TIMEOUT_SECONDS"],
            retry_attempts=app.config["PROVIDER_RETRY_ATTEMPTS"],
            retry_base_delay=app.config["PROVIDER_RETRY_BASE_DELAY"],
        )

    coordinator = BookingCoordinator(
        db.session, scheduling, payments, CoordinatorSettings.from_config(app.config)
    )
    app.extensions["booking_coordinator"] = coordinator
    app.extensions["webhook_ingestor"] = WebhookIngestor(
        coordinator,
        calendly_signing_key=app.config["CALENDLY_WEBHOOK_SIGNING_KEY"],
        stripe_webhook_secret=app.config["STRIPE_WEBHOOK_SECRET"],
        tolerance=app.config["WEBHOOK_TOLERANCE_SECONDS"],
    )

    @app.before_request
    def _load_user():
        load_current_user()

    @app.errorhandler(BookingError)
    def _booking_error(exc):
        level = logging.INFO if exc.recoverable else logging.WARNING
        logger.log(level, "%s: %s", exc.code, exc.message, extra={"booking_id": exc.booking_id})
        return jsonify(exc.to_dict()), exc.http_status

    @app.errorhandler(StaleDataError)
    def _stale_row(exc):
        db.session.rollback()
        return jsonify(error="Record was changed by someone else, reload and retry", code="STALE_STATE",
                       recoverable=True), 409

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        # CSP can be strict if you serve frontend separately; for API it's fine to keep minimal:
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp


    register_cli(app)


    return app

#-------------------------
import click
from utils.clock import utcnow

def register_cli(app):
    @app.cli.command("sweep-bookings")
    def sweep_bookings():
        """Release bookings stuck waiting for scheduling confirmation and drop expired webhooks."""
        result = app.extensions["booking_coordinator"].expire_stale(utcnow())
        click.echo(
            f"released={result.released} buffered_discarded={result.buffered_discarded} "
            f"events_purged={result.events_purged}"
        )

    @app.cli.command("purge-webhook-events")
    @click.option("--hours", type=int, default=None, help="Keep events newer than this many hours.")
    def purge_webhook_events(hours):
        """Delete processed webhook ids older than the retention window."""
        from datetime import timedelta

        hours = hours if hours is not None else app.config["WEBHOOK_EVENT_RETENTION_HOURS"]
        repo = app.extensions["booking_coordinator"].repo
        count = repo.purge_events(utcnow() - timedelta(hours=hours))
        click.echo(f"Purged {count} webhook events")

#-------------------------




if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
