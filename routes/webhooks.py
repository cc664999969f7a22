from flask import Blueprint, request, jsonify, current_app

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


def _ingestor():
    return current_app.extensions["webhook_ingestor"]


@webhook_bp.post("/calendly")
def calendly_webhook():
    result = _ingestor().handle_calendly(
        request.get_data(), request.headers.get("Calendly-Webhook-Signature", "")
    )
    return jsonify(result), 200


@webhook_bp.post("/stripe")
def stripe_webhook():
    result = _ingestor().handle_stripe(request.get_data(), request.headers.get("Stripe-Signature", ""))
    return jsonify(result), 200
