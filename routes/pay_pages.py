import os
from html import escape

from flask import Blueprint, request

from utils.audit import log_event

pay_pages_bp = Blueprint("pay_pages", __name__)

@pay_pages_bp.get("/pay/success")
def pay_success():
    # Stripe redirects here; the booking itself is confirmed by the webhook
    base_url = os.getenv("FRONTEND_BASE_URL", "http://localhost:5173").rstrip("/")
    booking_id = request.args.get("booking_id", "")
    booking_url = escape(f"{base_url}/bookings/{booking_id}" if booking_id else f"{base_url}/bookings")
    return """
    <html>
      <head><title>Payment Success</title></head>
      <body style="font-family: system-ui; max-width: 720px; margin: 40px auto;">
        <h1>Payment Successful ✅</h1>
        <p>Your payment was accepted. Your session will be confirmed automatically in a moment.</p>
        <a href=\"""" + booking_url + """\" style="display: inline-block; padding: 12px 18px; background: #0ea5e9; color: white; text-decoration: none; border-radius: 8px; font-weight: 600;">View my booking</a>
      </body>
    </html>
    """, 200

@pay_pages_bp.get("/pay/cancel")
def pay_cancel():
    booking_id = request.args.get("booking_id")
    if booking_id:
        # the checkout stays open until Stripe expires it; nothing to change here
        log_event("CHECKOUT_ABANDONED", entity="booking", entity_id=booking_id[:32],
                  metadata={"reason": "stripe_cancel"})

    return """
    <html>
      <head><title>Payment Cancelled</title></head>
      <body style="font-family: system-ui; max-width: 720px; margin: 40px auto;">
        <h1>Payment Cancelled ❌</h1>
        <p>No payment was taken. You can retry the payment from your booking page.</p>
      </body>
    </html>
    """, 200
